"""Camera-backed capture session: detect, score, gate, extract."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional

import numpy as np

from landface.capture.camera import Camera, CameraFactory, OpenCVCamera, acquire_camera
from landface.capture.stability import (
    CaptureState,
    CaptureTrigger,
    DetectionStats,
    FrameObservation,
    StabilityTracker,
)
from landface.config import EngineConfig
from landface.errors import (
    CaptureInProgress,
    DeviceUnavailable,
    LandFaceError,
    ModelUnavailable,
    NoFaceDetected,
    SessionAlreadyRunning,
)
from landface.models import ModelContext
from landface.quality.scorer import FaceQualityScorer
from landface.recognition.extractor import EmbeddingExtractor
from landface.types import CaptureResult, ScoredDetection

LOGGER = logging.getLogger("landface.capture.session")


class SessionEventType(str, Enum):
    STATE = "state"
    CAPTURED = "captured"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class SessionEvent:
    kind: SessionEventType
    timestamp: float
    state: Optional[CaptureState] = None
    capture: Optional[CaptureResult] = None
    error: Optional[Exception] = None
    frame_idx: Optional[int] = None


class CaptureSession:
    """One capture loop over one camera.

    The loop runs on a worker thread at ``config.tick_hz``. Each tick reads a
    frame, runs the detector, scores every detection and feeds the
    :class:`StabilityTracker`. A capture trigger submits a single extraction
    to a one-worker executor; while it is pending further triggers are dropped.
    Results, failures and state changes are published as :class:`SessionEvent`
    objects on a queue.

    ``process_frame`` and ``drain`` drive the same pipeline synchronously so the
    session can be exercised without a camera or thread.

    When ``models`` is not supplied the session loads its own
    :class:`ModelContext` on :meth:`start` and closes it on :meth:`stop`.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        models: Optional[ModelContext] = None,
        camera_factory: Optional[CameraFactory] = None,
        scorer: Optional[FaceQualityScorer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        self.models = models
        self._owns_models = False
        self.camera_factory = camera_factory or self._default_camera
        self.scorer = scorer or FaceQualityScorer()
        self.clock = clock
        self.tracker = StabilityTracker(
            stability_threshold=self.config.stability_threshold,
            quality_threshold=self.config.quality_threshold,
            capture_delay_s=self.config.capture_delay_s,
        )
        self.extractor: Optional[EmbeddingExtractor] = None
        if models is not None:
            self.extractor = self._build_extractor(models)

        self._events: "queue.Queue[SessionEvent]" = queue.Queue()
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._opened = threading.Event()
        self._startup_error: Optional[LandFaceError] = None
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None
        self._pending_manual = False
        self._latest: Optional[FrameObservation] = None
        self._frame_idx = 0
        self._running = False

    # ------------------------------------------------------------------ lifecycle
    @property
    def running(self) -> bool:
        return self._running and self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> CaptureState:
        return self.tracker.state

    def start(self) -> "CaptureSession":
        with self._lock:
            if self.running:
                raise SessionAlreadyRunning("Capture session is already running; stop it first")
            if self._thread is not None:
                self._shutdown()
            if self.models is None:
                self.models = ModelContext.load(self.config)
                self._owns_models = True
                self.extractor = self._build_extractor(self.models)
            self.tracker.cancel()
            self._stop_event.clear()
            self._opened.clear()
            self._startup_error = None
            self._frame_idx = 0
            self._latest = None
            self._thread = threading.Thread(target=self._run, name="landface-capture", daemon=True)
            self._running = True
            self._thread.start()

        self._opened.wait()
        if self._startup_error is not None:
            error = self._startup_error
            self._shutdown()
            raise error
        LOGGER.info("Capture session started tick_hz=%.1f", self.config.tick_hz)
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel the countdown, stop the loop and release the camera.

        An extraction that is still running is abandoned; its result is
        discarded.
        """
        with self._lock:
            if self._thread is None and self._executor is None:
                return
            self._stop_event.set()
            self.tracker.cancel()
        self._shutdown(timeout)
        self._emit(SessionEvent(SessionEventType.STOPPED, self.clock()))
        LOGGER.info("Capture session stopped")

    def __enter__(self) -> "CaptureSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------------------------------------------------ pipeline
    def process_frame(self, frame: np.ndarray, now: Optional[float] = None) -> Optional[CaptureTrigger]:
        """Run one frame through detect -> score -> track; submit extraction on trigger."""
        if self.models is None or self.extractor is None:
            raise ModelUnavailable("Capture session has no model context")
        now = self.clock() if now is None else now
        self._finalize_pending()

        with self._lock:
            frame_idx = self._frame_idx
            self._frame_idx += 1
        try:
            detections = self.models.detect(frame, frame_idx=frame_idx)
        except Exception as exc:
            LOGGER.debug("Detection failed at frame %d: %s", frame_idx, exc)
            detections = []
        faces = self.scorer.score_all(frame, detections)
        obs = FrameObservation(frame_idx=frame_idx, timestamp=now, faces=faces, frame=frame)

        with self._lock:
            self._latest = obs
            previous = self.tracker.state
            trigger = self.tracker.update(obs)
            current = self.tracker.state
            if current is not previous:
                self._emit(SessionEvent(SessionEventType.STATE, now, state=current, frame_idx=frame_idx))
            if trigger is None:
                return None
            if self._pending is not None:
                LOGGER.info("Capture trigger at frame %d dropped: extraction already pending", trigger.frame_idx)
                self.tracker.complete()
                self._emit(SessionEvent(SessionEventType.STATE, now, state=self.tracker.state))
                return None
            self._submit(trigger.frame, trigger.face, trigger.frame_idx, manual=False)
        return trigger

    def drain(self, timeout: Optional[float] = None) -> Optional[CaptureResult]:
        """Wait for a pending automatic extraction and publish its outcome."""
        with self._lock:
            future = self._pending
            manual = self._pending_manual
        if future is None:
            return None
        if manual:
            return future.result(timeout=timeout)
        try:
            future.exception(timeout=timeout)
        except Exception:
            return None
        return self._finalize_pending()

    def capture_now(self, timeout: Optional[float] = None) -> CaptureResult:
        """Extract from the best face of the latest frame, bypassing the stability gate."""
        with self._lock:
            if self._pending is not None:
                raise CaptureInProgress("An extraction is already in progress")
            obs = self._latest
            best = obs.best if obs is not None else None
            if obs is None or best is None or obs.frame is None:
                raise NoFaceDetected("No face in the latest frame")
            future = self._submit(obs.frame, best, obs.frame_idx, manual=True)
        try:
            result = future.result(timeout=timeout)
        except LandFaceError as exc:
            self._emit(SessionEvent(SessionEventType.FAILED, self.clock(), error=exc, frame_idx=obs.frame_idx))
            raise
        finally:
            with self._lock:
                if self._pending is future and future.done():
                    self._pending = None
                    self._pending_manual = False
        self._emit(SessionEvent(SessionEventType.CAPTURED, self.clock(), capture=result, frame_idx=obs.frame_idx))
        return result

    def stats(self) -> DetectionStats:
        with self._lock:
            return self.tracker.stats()

    # ------------------------------------------------------------------ events
    def next_event(self, timeout: Optional[float] = None) -> Optional[SessionEvent]:
        try:
            if timeout is not None and timeout <= 0:
                return self._events.get_nowait()
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, poll_interval: float = 0.1) -> Iterator[SessionEvent]:
        """Yield events until the session has stopped and the queue is empty."""
        while True:
            event = self.next_event(poll_interval)
            if event is None:
                if not self.running:
                    return
                continue
            yield event
            if event.kind is SessionEventType.STOPPED:
                return

    # ------------------------------------------------------------------ internals
    def _default_camera(self) -> Camera:
        return OpenCVCamera(self.config.camera_index, self.config.frame_width, self.config.frame_height)

    def _build_extractor(self, models: ModelContext) -> EmbeddingExtractor:
        return EmbeddingExtractor(
            models.descriptor,
            padding_px=self.config.padding_px,
            embedding_dim=self.config.embedding_dim,
        )

    def _emit(self, event: SessionEvent) -> None:
        self._events.put(event)

    def _run(self) -> None:
        try:
            with acquire_camera(self.camera_factory) as camera:
                self._opened.set()
                self._loop(camera)
        except LandFaceError as exc:
            if not self._opened.is_set():
                self._startup_error = exc
            else:
                LOGGER.warning("Capture loop failed: %s", exc)
                self._emit(SessionEvent(SessionEventType.FAILED, self.clock(), error=exc))
        except Exception as exc:
            LOGGER.exception("Capture loop crashed")
            self._emit(SessionEvent(SessionEventType.FAILED, self.clock(), error=exc))
        finally:
            self._opened.set()
            self._running = False

    def _loop(self, camera: Camera) -> None:
        interval = self.config.tick_interval_s
        while not self._stop_event.is_set():
            tick_start = self.clock()
            ok, frame = camera.read()
            if self._stop_event.is_set():
                break
            if not ok or frame is None:
                raise DeviceUnavailable("Camera stopped delivering frames")
            self.process_frame(frame, tick_start)
            elapsed = self.clock() - tick_start
            self._stop_event.wait(max(0.0, interval - elapsed))
        with self._lock:
            self.tracker.cancel()

    def _submit(self, frame: np.ndarray, face: ScoredDetection, frame_idx: int, manual: bool) -> Future:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="landface-extract")
        future = self._executor.submit(self._extract, frame, face, frame_idx, manual)
        self._pending = future
        self._pending_manual = manual
        LOGGER.debug("Extraction submitted frame=%d manual=%s", frame_idx, manual)
        return future

    def _extract(self, frame: np.ndarray, face: ScoredDetection, frame_idx: int, manual: bool) -> CaptureResult:
        assert self.extractor is not None
        embedding = self.extractor.extract(frame, face.detection)
        return CaptureResult(
            embedding=embedding,
            detection=face.detection,
            quality=face.quality,
            frame_idx=frame_idx,
            captured_at=self.clock(),
            manual=manual,
            extraction_method=self.extractor.extraction_method,
        )

    def _finalize_pending(self) -> Optional[CaptureResult]:
        with self._lock:
            future = self._pending
            if future is None or not future.done():
                return None
            self._pending = None
            manual = self._pending_manual
            self._pending_manual = False
        if manual:
            # capture_now reports its own outcome
            return None

        result: Optional[CaptureResult] = None
        try:
            result = future.result()
        except LandFaceError as exc:
            LOGGER.warning("Auto-capture extraction failed: %s", exc)
            self._emit(SessionEvent(SessionEventType.FAILED, self.clock(), error=exc))
        else:
            LOGGER.info("Captured embedding frame=%d quality=%.3f", result.frame_idx, result.quality)
            self._emit(
                SessionEvent(SessionEventType.CAPTURED, self.clock(), capture=result, frame_idx=result.frame_idx)
            )
        with self._lock:
            self.tracker.complete()
            self._emit(SessionEvent(SessionEventType.STATE, self.clock(), state=self.tracker.state))
        return result

    def _shutdown(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        self._running = False
        with self._lock:
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
                self._pending_manual = False
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        if self._owns_models and self.models is not None:
            self.models.close()
            self.models = None
            self.extractor = None
            self._owns_models = False


def wait_for_capture(session: CaptureSession, timeout: float) -> CaptureResult:
    """Block until ``session`` publishes a capture; failures are re-raised."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise NoFaceDetected(f"No stable face captured within {timeout:.0f}s")
        event = session.next_event(min(remaining, 0.25))
        if event is None:
            continue
        if event.kind is SessionEventType.CAPTURED and event.capture is not None:
            return event.capture
        if event.kind is SessionEventType.FAILED and event.error is not None:
            if isinstance(event.error, NoFaceDetected):
                LOGGER.warning("%s", event.error.user_message)
                continue
            raise event.error
        if event.kind is SessionEventType.STOPPED:
            raise NoFaceDetected("Capture session stopped before a face was captured")
        if event.kind is SessionEventType.STATE:
            LOGGER.debug("Session state %s", event.state.value if event.state else None)
