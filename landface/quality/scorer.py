"""Per-detection face quality scoring."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from landface.types import Detection, QualityBreakdown, ScoredDetection

LOGGER = logging.getLogger("landface.quality")


class FaceQualityScorer:
    """Scores a face crop from sharpness, brightness and size.

    ``quality = w_sharp * sharpness + w_bright * brightness + w_size * size``
    where every sub-score is clamped to ``[0, 1]``:

    * sharpness: Laplacian variance of the grayscale crop divided by
      ``sharpness_scale``
    * brightness: ``1 - |mean_luma - 128| / 128``
    * size: bbox area relative to ``reference_size``

    A box that does not overlap the frame scores 0 instead of raising.
    """

    def __init__(
        self,
        weights: Tuple[float, float, float] = (0.4, 0.3, 0.3),
        sharpness_scale: float = 1000.0,
        reference_size: Tuple[int, int] = (100, 100),
    ) -> None:
        if len(weights) != 3:
            raise ValueError("weights must be (sharpness, brightness, size)")
        self.weights = tuple(float(w) for w in weights)
        self.sharpness_scale = max(float(sharpness_scale), 1e-6)
        self.reference_area = float(max(1, reference_size[0] * reference_size[1]))

    def score(self, frame: np.ndarray, detection: Detection) -> float:
        breakdown = self.breakdown(frame, detection)
        return 0.0 if breakdown is None else breakdown.quality

    def breakdown(self, frame: np.ndarray, detection: Detection) -> Optional[QualityBreakdown]:
        gray = _gray_crop(frame, detection)
        if gray is None:
            LOGGER.debug("Face box %s outside frame %s; quality=0", detection.bbox, frame.shape[:2])
            return None
        sharpness = self._sharpness_score(gray)
        brightness = self._brightness_score(gray)
        size = self._size_score(detection)
        w_sharp, w_bright, w_size = self.weights
        quality = (w_sharp * sharpness) + (w_bright * brightness) + (w_size * size)
        return QualityBreakdown(
            sharpness=sharpness,
            brightness=brightness,
            size=size,
            quality=float(np.clip(quality, 0.0, 1.0)),
        )

    def score_all(self, frame: np.ndarray, detections: Sequence[Detection]) -> List[ScoredDetection]:
        return [
            ScoredDetection(detection=det, quality=self.score(frame, det), index=idx)
            for idx, det in enumerate(detections)
        ]

    def _sharpness_score(self, gray: np.ndarray) -> float:
        variance = float(cv2.Laplacian(gray, cv2.CV_64F).var())
        return float(np.clip(variance / self.sharpness_scale, 0.0, 1.0))

    @staticmethod
    def _brightness_score(gray: np.ndarray) -> float:
        mean_luma = float(gray.mean())
        return float(np.clip(1.0 - abs(mean_luma - 128.0) / 128.0, 0.0, 1.0))

    def _size_score(self, detection: Detection) -> float:
        return float(np.clip(detection.area / self.reference_area, 0.0, 1.0))


def _gray_crop(frame: np.ndarray, detection: Detection) -> Optional[np.ndarray]:
    if frame is None or frame.ndim < 2:
        return None
    height, width = frame.shape[:2]
    x1, y1, x2, y2 = [int(round(v)) for v in detection.bbox]
    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(width, x2), min(height, y2)
    if x2 - x1 < 2 or y2 - y1 < 2:
        return None
    crop = frame[y1:y2, x1:x2]
    if crop.ndim == 3 and crop.shape[2] == 4:
        return cv2.cvtColor(crop, cv2.COLOR_BGRA2GRAY)
    if crop.ndim == 3 and crop.shape[2] == 3:
        return cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY)
    if crop.ndim == 3:
        crop = crop[:, :, 0]
    return np.ascontiguousarray(crop)
