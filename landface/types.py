"""Common dataclasses and type aliases used across the landface package."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]

EMBEDDING_DIM = 128
NORM_TOLERANCE = 1e-4


@dataclass
class Detection:
    """Face detection returned by a detector capability."""

    frame_idx: int
    bbox: BBox
    score: float
    landmarks: Optional[np.ndarray] = None

    @classmethod
    def from_xywh(
        cls,
        x: float,
        y: float,
        width: float,
        height: float,
        score: float,
        frame_idx: int = 0,
    ) -> "Detection":
        return cls(frame_idx=frame_idx, bbox=(x, y, x + width, y + height), score=score)

    def as_xywh(self) -> Tuple[float, float, float, float]:
        x1, y1, x2, y2 = self.bbox
        return x1, y1, x2 - x1, y2 - y1

    @property
    def width(self) -> float:
        return max(0.0, self.bbox[2] - self.bbox[0])

    @property
    def height(self) -> float:
        return max(0.0, self.bbox[3] - self.bbox[1])

    @property
    def area(self) -> float:
        return bbox_area(self.bbox)


@dataclass
class ScoredDetection:
    """A detection paired with its quality score and position in frame order."""

    detection: Detection
    quality: float
    index: int = 0


@dataclass
class QualityBreakdown:
    sharpness: float
    brightness: float
    size: float
    quality: float


@dataclass
class StabilityWindow:
    """Run of consecutive qualifying frames observed by the state machine."""

    consecutive_stable_frames: int = 0
    countdown_started_at: Optional[float] = None

    def reset(self) -> None:
        self.consecutive_stable_frames = 0
        self.countdown_started_at = None


@dataclass
class EnrollmentRecord:
    """Persisted embedding of one owner plus its compliance metadata."""

    embedding_id: str
    owner_id: str
    embedding: np.ndarray
    quality_score: Optional[float] = None
    detection_confidence: Optional[float] = None
    consent_given: bool = False
    created_at: datetime = field(default_factory=lambda: utcnow())
    owner_name: Optional[str] = None
    embedding_hash: str = ""
    retention_expires: Optional[datetime] = None
    extraction_method: str = "insightface"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.retention_expires is None:
            return False
        return self.retention_expires <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding_id": self.embedding_id,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "embedding": self.embedding.astype(np.float32).tolist(),
            "embedding_hash": self.embedding_hash,
            "quality_score": self.quality_score,
            "detection_confidence": self.detection_confidence,
            "consent_given": self.consent_given,
            "created_at": self.created_at,
            "retention_expires": self.retention_expires,
            "extraction_method": self.extraction_method,
        }


@dataclass
class MatchResult:
    """One ranked candidate of a verification or similarity search."""

    owner_id: str
    similarity: float
    rank: int
    embedding_id: Optional[str] = None
    owner_name: Optional[str] = None
    confidence: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "embedding_id": self.embedding_id,
            "similarity": self.similarity,
            "rank": self.rank,
            "confidence": self.confidence,
        }


@dataclass
class VerificationResult:
    matched: bool
    best: Optional[MatchResult] = None
    top_matches: List[MatchResult] = field(default_factory=list)
    # Populated only when nothing cleared the threshold; never a match
    diagnostics: List[MatchResult] = field(default_factory=list)
    status: str = "no_match"
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "status": self.status,
            "message": self.message,
            "best": self.best.to_dict() if self.best else None,
            "top_matches": [m.to_dict() for m in self.top_matches],
            "diagnostics": [m.to_dict() for m in self.diagnostics],
        }


@dataclass
class CaptureResult:
    """Embedding produced by one capture (automatic or manual)."""

    embedding: np.ndarray
    detection: Detection
    quality: float
    frame_idx: int
    captured_at: float
    manual: bool = False
    extraction_method: str = "insightface"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def embedding_hash(vec: np.ndarray) -> str:
    """SHA-256 hex digest of the canonical float32 vector."""
    canonical = np.ascontiguousarray(np.asarray(vec, dtype=np.float32).reshape(-1))
    return hashlib.sha256(canonical.tobytes()).hexdigest()


def bbox_area(box: BBox) -> float:
    """Compute area of a bounding box."""
    x1, y1, x2, y2 = box
    return max(0.0, (x2 - x1)) * max(0.0, (y2 - y1))


def clamp_bbox(box: BBox, width: int, height: int, padding: float = 0.0) -> Tuple[int, int, int, int]:
    """Pad a box symmetrically and clamp it to image bounds as integer pixels."""
    x1, y1, x2, y2 = box
    cx1 = int(max(0, np.floor(x1 - padding)))
    cy1 = int(max(0, np.floor(y1 - padding)))
    cx2 = int(min(width, np.ceil(x2 + padding)))
    cy2 = int(min(height, np.ceil(y2 + padding)))
    return cx1, cy1, cx2, cy2


def iter_batches(items: List[Any], batch_size: int):
    """Yield successive batches from a list."""
    batch: List[Any] = []
    for item in items:
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch
