"""Stability gating and auto-capture state machine."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Optional

import numpy as np

from landface.recognition.extractor import select_best_detection
from landface.types import ScoredDetection, StabilityWindow

LOGGER = logging.getLogger("landface.capture.stability")


class CaptureState(str, Enum):
    SEARCHING = "searching"
    DETECTING = "detecting"
    STABLE = "stable"
    COUNTDOWN = "countdown"
    CAPTURED = "captured"


@dataclass
class FrameObservation:
    """Detections of one frame, already quality-scored."""

    frame_idx: int
    timestamp: float
    faces: List[ScoredDetection] = field(default_factory=list)
    frame: Optional[np.ndarray] = None

    @property
    def best(self) -> Optional[ScoredDetection]:
        return select_best_detection(self.faces)


@dataclass
class CaptureTrigger:
    """Emitted once per cycle when the countdown elapses."""

    frame_idx: int
    timestamp: float
    face: ScoredDetection
    frame: Optional[np.ndarray]


@dataclass
class HistoryEntry:
    timestamp: float
    face_count: int
    average_quality: float


@dataclass
class DetectionStats:
    consecutive_detections: int
    consecutive_stable_frames: int
    last_detection_time: Optional[float]
    average_quality: float
    detection_rate: int
    is_stable: bool
    state: CaptureState


class StabilityTracker:
    """Decides when a face has been good enough for long enough to capture.

    A frame qualifies when its best face scores at least ``quality_threshold``.
    ``stability_threshold`` consecutive qualifying frames enter STABLE and start
    a countdown of ``capture_delay_s``; when it elapses the tracker moves to
    CAPTURED and returns a single :class:`CaptureTrigger` carrying the best face
    seen during the stable window. Any non-qualifying frame before that resets
    the window and cancels the countdown. CAPTURED ignores frames until
    :meth:`complete` is called, so two captures always have a full
    SEARCHING -> STABLE cycle between them.

    Timestamps are supplied by the caller (seconds, monotonic).
    """

    def __init__(
        self,
        stability_threshold: int = 10,
        quality_threshold: float = 0.7,
        capture_delay_s: float = 3.0,
        history_size: int = 30,
    ) -> None:
        self.stability_threshold = stability_threshold
        self.quality_threshold = quality_threshold
        self.capture_delay_s = capture_delay_s
        self.window = StabilityWindow()
        self.state = CaptureState.SEARCHING
        self.consecutive_detections = 0
        self.last_detection_time: Optional[float] = None
        self.history: Deque[HistoryEntry] = deque(maxlen=history_size)
        self._best: Optional[CaptureTrigger] = None

    def update(self, obs: FrameObservation) -> Optional[CaptureTrigger]:
        if self.state is CaptureState.CAPTURED:
            return None
        self._record_history(obs)

        best = obs.best
        if best is None or best.quality < self.quality_threshold:
            if self.window.countdown_started_at is not None:
                LOGGER.info("Countdown cancelled at frame %d: face no longer qualifies", obs.frame_idx)
            self._reset_window()
            self._transition(CaptureState.DETECTING if obs.faces else CaptureState.SEARCHING, obs.frame_idx)
            return None

        self.window.consecutive_stable_frames += 1
        if self._best is None or best.quality > self._best.face.quality:
            self._best = CaptureTrigger(
                frame_idx=obs.frame_idx,
                timestamp=obs.timestamp,
                face=best,
                frame=obs.frame,
            )

        if self.window.consecutive_stable_frames < self.stability_threshold:
            self._transition(CaptureState.DETECTING, obs.frame_idx)
            return None

        if self.window.countdown_started_at is None:
            self.window.countdown_started_at = obs.timestamp
            self._transition(CaptureState.STABLE, obs.frame_idx)
            LOGGER.info(
                "Stable face at frame %d; auto-capture in %.1fs",
                obs.frame_idx,
                self.capture_delay_s,
            )
        else:
            self._transition(CaptureState.COUNTDOWN, obs.frame_idx)
        return self.poll(obs.timestamp)

    def poll(self, now: float) -> Optional[CaptureTrigger]:
        """Fire the capture if the countdown has elapsed by ``now``."""
        if self.state not in (CaptureState.STABLE, CaptureState.COUNTDOWN):
            return None
        started = self.window.countdown_started_at
        if started is None or self._best is None:
            return None
        if now - started < self.capture_delay_s:
            return None
        trigger = self._best
        self._transition(CaptureState.CAPTURED, trigger.frame_idx)
        LOGGER.info(
            "Auto-capture triggered best_frame=%d quality=%.3f",
            trigger.frame_idx,
            trigger.face.quality,
        )
        return trigger

    def countdown_remaining(self, now: float) -> Optional[float]:
        started = self.window.countdown_started_at
        if started is None or self.state not in (CaptureState.STABLE, CaptureState.COUNTDOWN):
            return None
        return max(0.0, self.capture_delay_s - (now - started))

    def complete(self) -> None:
        """Finish a capture cycle and start searching again."""
        self._reset_window()
        self.consecutive_detections = 0
        self._transition(CaptureState.SEARCHING, None)

    def cancel(self) -> None:
        """Drop any countdown and window without emitting a capture."""
        if self.window.countdown_started_at is not None:
            LOGGER.info("Countdown cancelled")
        self.complete()
        self.history.clear()

    def stats(self) -> DetectionStats:
        recent = list(self.history)[-10:]
        avg_quality = float(np.mean([h.average_quality for h in recent])) if recent else 0.0
        return DetectionStats(
            consecutive_detections=self.consecutive_detections,
            consecutive_stable_frames=self.window.consecutive_stable_frames,
            last_detection_time=self.last_detection_time,
            average_quality=avg_quality,
            detection_rate=len(recent),
            is_stable=self.window.consecutive_stable_frames >= self.stability_threshold,
            state=self.state,
        )

    def _record_history(self, obs: FrameObservation) -> None:
        if obs.faces:
            self.consecutive_detections += 1
            self.last_detection_time = obs.timestamp
            self.history.append(
                HistoryEntry(
                    timestamp=obs.timestamp,
                    face_count=len(obs.faces),
                    average_quality=float(np.mean([f.quality for f in obs.faces])),
                )
            )
        else:
            self.consecutive_detections = 0

    def _reset_window(self) -> None:
        self.window.reset()
        self._best = None

    def _transition(self, state: CaptureState, frame_idx: Optional[int]) -> None:
        if state is self.state:
            return
        LOGGER.debug("Capture state %s -> %s (frame=%s)", self.state.value, state.value, frame_idx)
        self.state = state
