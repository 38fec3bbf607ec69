"""SIMULATION ONLY: synthetic descriptor for demos and hardware-free testing.

Vectors produced here carry no identity information. They are derived from
the pixel content of the crop (same crop -> same vector) and every capture
made with them is labelled ``extraction_method="simulation"``. This backend is
only constructed when ``simulation_mode`` is explicitly enabled; it is never
a fallback for a model that failed to load.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import cv2
import numpy as np

from landface.types import EMBEDDING_DIM, Detection

LOGGER = logging.getLogger("landface.detectors.simulated")


class SimulatedDescriptor:
    extraction_method = "simulation"

    def __init__(self, embedding_dim: int = EMBEDDING_DIM) -> None:
        self.embedding_dim = embedding_dim
        self._side = int(math.ceil(math.sqrt(embedding_dim)))
        LOGGER.warning(
            "SIMULATION MODE: descriptors are synthetic (%d-d) and must not be used for real verification",
            embedding_dim,
        )

    def detect_with_descriptor(self, region: np.ndarray) -> Optional[Tuple[Detection, np.ndarray]]:
        if region is None or region.size == 0:
            return None
        gray = region
        if region.ndim == 3:
            gray = cv2.cvtColor(region, cv2.COLOR_BGR2GRAY)
        small = cv2.resize(gray, (self._side, self._side), interpolation=cv2.INTER_AREA)
        vec = small.astype(np.float32).reshape(-1)[: self.embedding_dim]
        vec = vec - vec.mean()
        if not np.any(vec):
            return None
        height, width = region.shape[:2]
        detection = Detection(frame_idx=0, bbox=(0.0, 0.0, float(width), float(height)), score=1.0)
        return detection, vec

    def close(self) -> None:
        return None
