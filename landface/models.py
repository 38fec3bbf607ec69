"""Explicit model initialization: detector + descriptor bundled per session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

import numpy as np

from landface.config import EngineConfig
from landface.errors import ModelUnavailable
from landface.recognition.extractor import DescriptorBackend
from landface.types import Detection

LOGGER = logging.getLogger("landface.models")


@dataclass
class ModelContext:
    """Loaded detector and descriptor capabilities.

    Built with :meth:`load` (or directly, with injected backends in tests) and
    closed by whoever owns it. There is no process-wide "models loaded" flag.
    """

    detector: Any
    descriptor: Optional[DescriptorBackend]
    simulation: bool = False

    @classmethod
    def load(cls, config: EngineConfig) -> "ModelContext":
        if config.detector_backend == "haar":
            from landface.detectors.haar import HaarCascadeDetector

            detector: Any = HaarCascadeDetector()
        else:
            from landface.detectors.face_retina import RetinaFaceDetector

            detector = RetinaFaceDetector(providers=config.providers, det_thresh=config.det_thresh)

        if config.simulation_mode:
            from landface.detectors.simulated import SimulatedDescriptor

            descriptor: DescriptorBackend = SimulatedDescriptor(embedding_dim=config.embedding_dim)
        else:
            from landface.recognition.embed_arcface import ArcFaceDescriptor

            descriptor = ArcFaceDescriptor(providers=config.providers)

        context = cls(detector=detector, descriptor=descriptor, simulation=config.simulation_mode)
        context.check_dimension(config.embedding_dim)
        LOGGER.info(
            "Model context ready detector=%s descriptor=%s dim=%d simulation=%s",
            type(detector).__name__,
            type(descriptor).__name__,
            config.embedding_dim,
            config.simulation_mode,
        )
        return context

    @property
    def ready(self) -> bool:
        return self.detector is not None and self.descriptor is not None

    def check_dimension(self, embedding_dim: int) -> None:
        produced = getattr(self.descriptor, "embedding_dim", None)
        if produced is not None and int(produced) != embedding_dim:
            self.close()
            raise ModelUnavailable(
                f"Descriptor produces {produced}-d vectors but embedding_dim is {embedding_dim}; "
                f"set embedding_dim: {produced} in the engine config"
            )

    def detect(self, frame: np.ndarray, frame_idx: int = 0) -> List[Detection]:
        if self.detector is None:
            raise ModelUnavailable("Detector model is not loaded")
        return list(self.detector.detect(frame, frame_idx=frame_idx))

    def close(self) -> None:
        for backend in (self.detector, self.descriptor):
            closer = getattr(backend, "close", None)
            if callable(closer):
                closer()
        self.detector = None
        self.descriptor = None
        LOGGER.info("Model context closed")
