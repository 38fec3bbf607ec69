"""Embedding extraction, validation and normalization."""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from landface.errors import InvalidEmbedding, LandFaceError, ModelUnavailable, NoFaceDetected
from landface.types import EMBEDDING_DIM, NORM_TOLERANCE, Detection, ScoredDetection, clamp_bbox

LOGGER = logging.getLogger("landface.recognition.extractor")


class DescriptorBackend(Protocol):
    """Black-box descriptor capability: region -> best face + raw vector."""

    embedding_dim: int
    extraction_method: str

    def detect_with_descriptor(self, region: np.ndarray) -> Optional[Tuple[Detection, np.ndarray]]:
        ...


def validate_embedding(vec: Any, dim: int = EMBEDDING_DIM) -> np.ndarray:
    """Return ``vec`` as a 1-D float32 array or raise InvalidEmbedding.

    Rejects anything that is not a flat numeric sequence of length ``dim``,
    vectors containing NaN/inf, and the zero vector.
    """
    if vec is None or isinstance(vec, (str, bytes, dict)):
        raise InvalidEmbedding(f"Embedding must be a numeric array, got {type(vec).__name__}")
    try:
        arr = np.asarray(vec, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidEmbedding(f"Embedding is not numeric: {exc}") from exc
    if arr.ndim != 1:
        raise InvalidEmbedding(f"Embedding must be one-dimensional, got shape {arr.shape}")
    if arr.shape[0] != dim:
        raise InvalidEmbedding(f"Embedding has {arr.shape[0]} dimensions, expected {dim}")
    if not np.all(np.isfinite(arr)):
        raise InvalidEmbedding("Embedding contains NaN or infinite values")
    if not np.any(arr):
        raise InvalidEmbedding("Embedding is the zero vector")
    return arr.astype(np.float32)


def is_valid_embedding(vec: Any, dim: int = EMBEDDING_DIM) -> bool:
    try:
        validate_embedding(vec, dim)
    except InvalidEmbedding:
        return False
    return True


def normalize_embedding(vec: np.ndarray) -> np.ndarray:
    """Scale a finite nonzero vector to unit L2 norm (float32)."""
    arr = np.asarray(vec, dtype=np.float64).reshape(-1)
    norm = float(np.linalg.norm(arr))
    if not np.isfinite(norm) or norm == 0.0:
        raise InvalidEmbedding("Cannot normalize a zero or non-finite vector")
    unit = (arr / norm).astype(np.float32)
    if abs(float(np.linalg.norm(unit.astype(np.float64))) - 1.0) > NORM_TOLERANCE:
        raise InvalidEmbedding("Normalized embedding drifted from unit norm")
    return unit


def prepare_embedding(vec: Any, dim: int = EMBEDDING_DIM) -> np.ndarray:
    """Validate then normalize; the single entry point for untrusted vectors."""
    return normalize_embedding(validate_embedding(vec, dim))


def select_best_detection(candidates: Sequence[ScoredDetection]) -> Optional[ScoredDetection]:
    """Highest quality wins; ties go to the larger box, then the earlier index."""
    if not candidates:
        return None
    return min(candidates, key=lambda c: (-c.quality, -c.detection.area, c.index))


def crop_padded(frame: np.ndarray, detection: Detection, padding: float) -> np.ndarray:
    height, width = frame.shape[:2]
    x1, y1, x2, y2 = clamp_bbox(detection.bbox, width, height, padding)
    if x2 <= x1 or y2 <= y1:
        raise NoFaceDetected(f"Face box {detection.bbox} lies outside the {width}x{height} frame")
    return np.ascontiguousarray(frame[y1:y2, x1:x2])


def centroid(embeddings: Sequence[np.ndarray]) -> np.ndarray:
    """Mean of unit embeddings, re-normalized."""
    if not embeddings:
        raise InvalidEmbedding("No embeddings to average")
    stacked = np.stack([np.asarray(e, dtype=np.float64).reshape(-1) for e in embeddings], axis=0)
    return normalize_embedding(stacked.mean(axis=0))


class EmbeddingExtractor:
    """Crops a detected face and turns it into a validated unit embedding."""

    def __init__(
        self,
        descriptor: Optional[DescriptorBackend],
        padding_px: float = 20,
        embedding_dim: int = EMBEDDING_DIM,
    ) -> None:
        self.descriptor = descriptor
        self.padding_px = padding_px
        self.embedding_dim = embedding_dim

    @property
    def extraction_method(self) -> str:
        return getattr(self.descriptor, "extraction_method", "unknown")

    def extract(self, frame: np.ndarray, detection: Detection, padding: Optional[float] = None) -> np.ndarray:
        if self.descriptor is None:
            raise ModelUnavailable("Descriptor model is not loaded")
        pad = self.padding_px if padding is None else padding
        region = crop_padded(frame, detection, pad)
        try:
            found = self.descriptor.detect_with_descriptor(region)
        except LandFaceError:
            raise
        except Exception as exc:
            raise ModelUnavailable(f"Descriptor inference failed: {exc}") from exc
        if found is None:
            raise NoFaceDetected("No face detected in cropped region")
        _, raw = found
        embedding = prepare_embedding(raw, self.embedding_dim)
        LOGGER.debug(
            "Extracted embedding frame=%s bbox=%s padding=%s",
            detection.frame_idx,
            detection.bbox,
            pad,
        )
        return embedding

    def extract_variants(
        self,
        frame: np.ndarray,
        detection: Detection,
        paddings: Sequence[float] = (10, 20, 30),
    ) -> List[np.ndarray]:
        """One embedding per padding; variations without a face are skipped."""
        embeddings: List[np.ndarray] = []
        for pad in paddings:
            try:
                embeddings.append(self.extract(frame, detection, padding=pad))
            except NoFaceDetected:
                LOGGER.debug("No face for padding variation %s", pad)
        if not embeddings:
            raise NoFaceDetected("No face detected in any padding variation")
        return embeddings
