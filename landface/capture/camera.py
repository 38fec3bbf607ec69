"""Camera/device acquisition with guaranteed release."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Protocol, Tuple, Union

import cv2
import numpy as np

from landface.errors import CameraAccessDenied, DeviceUnavailable, LandFaceError

LOGGER = logging.getLogger("landface.capture.camera")


class Camera(Protocol):
    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        ...

    def release(self) -> None:
        ...


CameraFactory = Callable[[], Camera]


class OpenCVCamera:
    """cv2.VideoCapture over a device index or a video file path."""

    def __init__(self, source: Union[int, str] = 0, width: int = 640, height: int = 480) -> None:
        self.source = source
        self.width = width
        self.height = height
        try:
            cap = cv2.VideoCapture(source)
        except PermissionError as exc:
            raise CameraAccessDenied(f"Camera {source!r} access denied: {exc}") from exc
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailable(f"Unable to open camera {source!r}")
        if isinstance(source, int):
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._cap = cap
        LOGGER.info(
            "Opened camera %r %dx%d",
            source,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    def read(self) -> Tuple[bool, Optional[np.ndarray]]:
        if self._cap is None:
            return False, None
        return self._cap.read()

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


def parse_camera_source(value: str) -> Union[int, str]:
    """CLI helper: digits select a device index, anything else is a path/URL."""
    return int(value) if value.isdigit() else value


@contextmanager
def acquire_camera(factory: CameraFactory) -> Iterator[Camera]:
    """Open a camera through ``factory`` and release it on every exit path."""
    try:
        camera = factory()
    except LandFaceError:
        raise
    except PermissionError as exc:
        raise CameraAccessDenied(str(exc)) from exc
    except Exception as exc:
        raise DeviceUnavailable(f"Camera could not be opened: {exc}") from exc
    try:
        yield camera
    finally:
        try:
            camera.release()
        finally:
            LOGGER.info("Camera released")
