"""ArcFace descriptor via InsightFace FaceAnalysis."""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from landface.detectors.face_retina import default_providers, limit_runtime_threads
from landface.errors import ModelUnavailable
from landface.types import Detection

LOGGER = logging.getLogger("landface.recognition.embed")

ARCFACE_DIM = 512


class ArcFaceDescriptor:
    """Detects the strongest face in a crop and returns its raw ArcFace vector.

    The vector is returned unnormalized; normalization and validation happen
    in :class:`~landface.recognition.extractor.EmbeddingExtractor`.
    """

    extraction_method = "insightface"

    def __init__(
        self,
        providers: Optional[Sequence[str]] = None,
        model_pack: str = "buffalo_l",
        det_size: Tuple[int, int] = (320, 320),
    ) -> None:
        limit_runtime_threads()
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise ModelUnavailable(
                "insightface is required for ArcFaceDescriptor. "
                "Install it via `pip install insightface`."
            ) from exc

        provider_list = tuple(providers) if providers is not None else default_providers()
        LOGGER.info("Loading ArcFace model pack %s providers=%s", model_pack, provider_list)
        try:
            analysis = FaceAnalysis(
                name=model_pack,
                allowed_modules=["detection", "recognition"],
                providers=list(provider_list),
            )
            analysis.prepare(ctx_id=0, det_size=det_size)
        except Exception as exc:  # pragma: no cover - model download/runtime failure
            raise ModelUnavailable(f"Unable to load ArcFace model pack {model_pack}: {exc}") from exc
        recognition = analysis.models.get("recognition")
        if recognition is None:
            raise ModelUnavailable(f"Model pack {model_pack} has no recognition model")
        self.app = analysis
        self.providers = provider_list
        output_shape = getattr(recognition, "output_shape", None)
        self.embedding_dim = int(output_shape[1]) if output_shape else ARCFACE_DIM
        self.backend = None
        try:
            session = getattr(recognition, "session", None)
            if session is not None:
                self.backend = session.get_providers()[0]
        except Exception:  # pragma: no cover - provider introspection best-effort
            self.backend = None

    def detect_with_descriptor(self, region: np.ndarray) -> Optional[Tuple[Detection, np.ndarray]]:
        faces = self.app.get(region)
        faces = [face for face in faces if getattr(face, "embedding", None) is not None]
        if not faces:
            return None
        face = max(faces, key=lambda f: float(f.det_score))
        detection = Detection(
            frame_idx=0,
            bbox=tuple(float(v) for v in face.bbox),  # type: ignore[arg-type]
            score=float(face.det_score),
            landmarks=np.asarray(face.kps, dtype=np.float32) if face.kps is not None else None,
        )
        return detection, np.asarray(face.embedding, dtype=np.float32).reshape(-1)

    def close(self) -> None:
        self.app = None
