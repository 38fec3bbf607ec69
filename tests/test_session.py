from __future__ import annotations

import threading
import time

import numpy as np
import pytest

from landface.capture.session import CaptureSession, SessionEventType, wait_for_capture
from landface.capture.stability import CaptureState
from landface.config import EngineConfig
from landface.errors import CameraAccessDenied, CaptureInProgress, NoFaceDetected, SessionAlreadyRunning
from landface.models import ModelContext
from landface.types import Detection

DIM = 128
FACE_BOX = (40.0, 40.0, 160.0, 160.0)


def _face_frame(size: int = 200, block: int = 4) -> np.ndarray:
    yy, xx = np.indices((size, size))
    pattern = (((yy // block) + (xx // block)) % 2 * 255).astype(np.uint8)
    return np.dstack([pattern] * 3)


def _blank_frame(size: int = 200) -> np.ndarray:
    return np.zeros((size, size, 3), dtype=np.uint8)


class _BrightFaceDetector:
    """Reports a face whenever the frame is not blank."""

    def detect(self, frame, frame_idx=0):
        if not frame.any():
            return []
        return [Detection(frame_idx=frame_idx, bbox=FACE_BOX, score=0.97)]


class _ExplodingDetector:
    def detect(self, frame, frame_idx=0):
        raise RuntimeError("detector crashed")


class _FakeDescriptor:
    embedding_dim = DIM
    extraction_method = "insightface"

    def __init__(self, gate: threading.Event = None):
        self.gate = gate
        self.calls = 0

    def detect_with_descriptor(self, region):
        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5.0)
        h, w = region.shape[:2]
        vec = np.arange(1, DIM + 1, dtype=np.float32)
        return Detection(frame_idx=0, bbox=(0.0, 0.0, float(w), float(h)), score=0.97), vec


class _FakeCamera:
    def __init__(self, frame: np.ndarray):
        self.frame = frame
        self.reads = 0
        self.released = False

    def read(self):
        self.reads += 1
        return True, self.frame.copy()

    def release(self):
        self.released = True


def _config(**overrides) -> EngineConfig:
    base = dict(stability_threshold=3, quality_threshold=0.7, capture_delay_ms=1000, tick_hz=200)
    base.update(overrides)
    return EngineConfig(**base)


def _session(descriptor=None, detector=None, **overrides) -> CaptureSession:
    models = ModelContext(detector=detector or _BrightFaceDetector(), descriptor=descriptor or _FakeDescriptor())
    return CaptureSession(_config(**overrides), models=models)


def _drain_events(session):
    events = []
    while True:
        event = session.next_event(0)
        if event is None:
            return events
        events.append(event)


def test_auto_capture_emits_single_capture_and_resets():
    session = _session()
    frame = _face_frame()
    triggers = [session.process_frame(frame, now=t) for t in (0.0, 0.1, 0.2, 0.5)]
    assert all(t is None for t in triggers)
    assert session.state is CaptureState.COUNTDOWN

    trigger = session.process_frame(frame, now=1.5)
    assert trigger is not None
    result = session.drain(timeout=5.0)
    assert result is not None
    assert result.manual is False
    assert np.isclose(np.linalg.norm(result.embedding), 1.0, atol=1e-4)
    assert result.quality >= 0.9
    assert session.state is CaptureState.SEARCHING

    events = _drain_events(session)
    captured = [e for e in events if e.kind is SessionEventType.CAPTURED]
    assert len(captured) == 1
    states = [e.state for e in events if e.kind is SessionEventType.STATE]
    assert states[:3] == [CaptureState.DETECTING, CaptureState.STABLE, CaptureState.COUNTDOWN]
    assert states[-1] is CaptureState.SEARCHING
    session.stop()


def test_blank_frame_before_delay_cancels_capture():
    session = _session()
    frame = _face_frame()
    for t in (0.0, 0.1, 0.2):
        session.process_frame(frame, now=t)
    assert session.process_frame(_blank_frame(), now=0.3) is None
    assert session.process_frame(frame, now=5.0) is None
    assert session.drain(timeout=0.1) is None
    assert session.state is CaptureState.DETECTING


def test_detector_failure_is_treated_as_no_face():
    session = _session(detector=_ExplodingDetector())
    assert session.process_frame(_face_frame(), now=0.0) is None
    assert session.state is CaptureState.SEARCHING


def test_manual_capture_uses_latest_frame():
    session = _session()
    with pytest.raises(NoFaceDetected):
        session.capture_now()

    session.process_frame(_blank_frame(), now=0.0)
    with pytest.raises(NoFaceDetected):
        session.capture_now()

    session.process_frame(_face_frame(), now=0.1)
    result = session.capture_now(timeout=5.0)
    assert result.manual is True
    assert result.frame_idx == 1
    assert session.state is CaptureState.DETECTING
    kinds = [e.kind for e in _drain_events(session)]
    assert SessionEventType.CAPTURED in kinds
    session.stop()


def test_manual_capture_rejected_while_extraction_pending():
    gate = threading.Event()
    descriptor = _FakeDescriptor(gate=gate)
    session = _session(descriptor=descriptor, capture_delay_ms=0)
    frame = _face_frame()
    for t in (0.0, 0.1):
        session.process_frame(frame, now=t)
    assert session.process_frame(frame, now=0.2) is not None

    with pytest.raises(CaptureInProgress):
        session.capture_now()
    # frames during the pending extraction never produce a second trigger
    assert session.process_frame(frame, now=0.3) is None
    assert session.state is CaptureState.CAPTURED

    gate.set()
    assert session.drain(timeout=5.0) is not None
    assert descriptor.calls == 1
    session.stop()


def test_threaded_session_captures_and_releases_camera():
    camera = _FakeCamera(_face_frame())
    models = ModelContext(detector=_BrightFaceDetector(), descriptor=_FakeDescriptor())
    session = CaptureSession(_config(capture_delay_ms=0), models=models, camera_factory=lambda: camera)

    session.start()
    try:
        with pytest.raises(SessionAlreadyRunning):
            session.start()
        result = wait_for_capture(session, timeout=5.0)
    finally:
        session.stop()

    assert result.embedding.shape == (DIM,)
    assert camera.released
    assert not session.running


def test_stop_during_countdown_releases_camera_without_capture():
    camera = _FakeCamera(_face_frame())
    models = ModelContext(detector=_BrightFaceDetector(), descriptor=_FakeDescriptor())
    session = CaptureSession(_config(capture_delay_ms=60_000), models=models, camera_factory=lambda: camera)

    session.start()
    deadline = time.monotonic() + 5.0
    while session.state not in (CaptureState.STABLE, CaptureState.COUNTDOWN) and time.monotonic() < deadline:
        time.sleep(0.01)
    assert session.state in (CaptureState.STABLE, CaptureState.COUNTDOWN)
    session.stop()

    assert camera.released
    assert session.state is CaptureState.SEARCHING
    events = list(session.events(poll_interval=0.01))
    assert all(e.kind is not SessionEventType.CAPTURED for e in events)
    assert events[-1].kind is SessionEventType.STOPPED


def test_session_can_restart_after_stop():
    cameras = []

    def factory():
        cam = _FakeCamera(_face_frame())
        cameras.append(cam)
        return cam

    models = ModelContext(detector=_BrightFaceDetector(), descriptor=_FakeDescriptor())
    session = CaptureSession(_config(capture_delay_ms=0), models=models, camera_factory=factory)
    session.start()
    session.stop()
    session.start()
    try:
        assert session.running
    finally:
        session.stop()
    assert len(cameras) == 2
    assert all(cam.released for cam in cameras)


def test_camera_permission_error_prevents_start():
    def factory():
        raise PermissionError("camera blocked by OS")

    models = ModelContext(detector=_BrightFaceDetector(), descriptor=_FakeDescriptor())
    session = CaptureSession(_config(), models=models, camera_factory=factory)
    with pytest.raises(CameraAccessDenied):
        session.start()
    assert not session.running


def test_model_context_dimension_mismatch():
    from landface.errors import ModelUnavailable

    context = ModelContext(detector=_BrightFaceDetector(), descriptor=_FakeDescriptor())
    with pytest.raises(ModelUnavailable):
        context.check_dimension(512)
    assert not context.ready


def test_stop_during_extraction_discards_result_and_releases_camera():
    gate = threading.Event()
    descriptor = _FakeDescriptor(gate=gate)
    camera = _FakeCamera(_face_frame())
    models = ModelContext(detector=_BrightFaceDetector(), descriptor=descriptor)
    session = CaptureSession(_config(capture_delay_ms=0), models=models, camera_factory=lambda: camera)

    session.start()
    try:
        deadline = time.monotonic() + 5.0
        while descriptor.calls < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        # extraction is now blocked inside the descriptor
        assert session.state is CaptureState.CAPTURED
        session.stop()
        assert camera.released
        assert not session.running
        assert session.state is CaptureState.SEARCHING
    finally:
        gate.set()
        session.stop()

    # the abandoned extraction finishes now; its result must never be published
    time.sleep(0.1)
    kinds = [e.kind for e in _drain_events(session)]
    assert SessionEventType.STOPPED in kinds
    assert SessionEventType.CAPTURED not in kinds
    assert descriptor.calls == 1
