"""Exception taxonomy for capture, extraction, and store operations."""

from __future__ import annotations

from typing import Optional


class LandFaceError(RuntimeError):
    """Base class for all engine errors."""

    user_message = "Face processing failed. Please try again."
    retryable = False


class NoFaceDetected(LandFaceError):
    user_message = "No face found. Please reposition your face in front of the camera."
    retryable = True


class InvalidEmbedding(LandFaceError, ValueError):
    user_message = "The captured face sample was unusable. Please capture again."
    retryable = True


class CameraAccessDenied(LandFaceError):
    user_message = "Camera permission denied. Please allow camera access and try again."


class DeviceUnavailable(LandFaceError):
    user_message = "Failed to access camera. Please check your camera and try again."


class ModelUnavailable(LandFaceError):
    user_message = "Face recognition models are not available."


class StoreError(LandFaceError):
    user_message = "The embedding store rejected the request."


class StoreUnavailable(StoreError):
    user_message = "Could not reach the embedding store; the check was not performed."
    retryable = True


class EmbeddingNotFound(StoreError, KeyError):
    def __init__(self, key: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"No embedding found for {key!r}")
        self.key = key

    def __str__(self) -> str:
        return str(self.args[0])


class DuplicateEmbedding(StoreError):
    pass


class SessionAlreadyRunning(LandFaceError):
    pass


class CaptureInProgress(LandFaceError):
    retryable = True
