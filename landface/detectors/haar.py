"""OpenCV Haar-cascade face detector (no model download required)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from landface.errors import ModelUnavailable
from landface.types import Detection

LOGGER = logging.getLogger("landface.detectors.haar")

DEFAULT_CASCADE = "haarcascade_frontalface_default.xml"


class HaarCascadeDetector:
    """Frontal-face cascade; Haar has no calibrated confidence so every hit scores 1.0."""

    def __init__(
        self,
        cascade_path: Optional[str] = None,
        scale_factor: float = 1.1,
        min_neighbors: int = 3,
        min_size: int = 40,
    ) -> None:
        path = cascade_path or str(Path(cv2.data.haarcascades) / DEFAULT_CASCADE)
        classifier = cv2.CascadeClassifier(path)
        if classifier.empty():
            raise ModelUnavailable(f"Failed to load Haar cascade {path}")
        self.classifier = classifier
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size
        LOGGER.info("Loaded Haar cascade %s", path)

    def detect(self, image: np.ndarray, frame_idx: int = 0) -> List[Detection]:
        gray = image
        if image.ndim == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        rects = self.classifier.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_size, self.min_size),
        )
        return [
            Detection.from_xywh(float(x), float(y), float(w), float(h), score=1.0, frame_idx=frame_idx)
            for (x, y, w, h) in rects
        ]

    def close(self) -> None:
        self.classifier = None
