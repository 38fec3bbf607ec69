"""RetinaFace detection via InsightFace."""

from __future__ import annotations

import logging
import os
import platform
from typing import List, Optional, Sequence, Tuple

import numpy as np

from landface.errors import ModelUnavailable
from landface.types import Detection

LOGGER = logging.getLogger("landface.detectors.face")


def default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers based on platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def limit_runtime_threads() -> None:
    os.environ.setdefault("OMP_NUM_THREADS", "2")
    os.environ.setdefault("MKL_NUM_THREADS", "2")
    os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")


class RetinaFaceDetector:
    """Wrapper around the InsightFace RetinaFace detector."""

    def __init__(
        self,
        providers: Optional[Sequence[str]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.5,
        model_pack: str = "buffalo_l",
    ) -> None:
        limit_runtime_threads()
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise ModelUnavailable(
                "insightface is required for RetinaFaceDetector. "
                "Install it via `pip install insightface`."
            ) from exc

        self.det_size = det_size
        self.det_thresh = det_thresh
        self.providers = tuple(providers) if providers is not None else default_providers()
        try:
            self.app = FaceAnalysis(name=model_pack, allowed_modules=["detection"], providers=list(self.providers))
            self.app.prepare(ctx_id=0, det_size=self.det_size)
        except Exception as exc:  # pragma: no cover - model download/runtime failure
            raise ModelUnavailable(f"Unable to load RetinaFace detector ({model_pack}): {exc}") from exc
        backend = None
        try:
            detection_model = self.app.models.get("detection")
            if detection_model is not None and hasattr(detection_model, "session"):
                backend = detection_model.session.get_providers()[0]
        except Exception:  # pragma: no cover - optional logging
            backend = None
        LOGGER.info(
            "Loaded RetinaFace detector det_size=%s det_thresh=%.2f providers=%s backend=%s",
            det_size,
            det_thresh,
            self.providers,
            backend,
        )

    def detect(self, image: np.ndarray, frame_idx: int = 0) -> List[Detection]:
        """Run RetinaFace on an image and return detections in model order."""
        faces = self.app.get(image)
        detections: List[Detection] = []
        for face in faces:
            score = float(face.det_score)
            if score < self.det_thresh:
                continue
            bbox = tuple(float(v) for v in face.bbox)
            landmarks = np.asarray(face.kps, dtype=np.float32) if face.kps is not None else None
            detections.append(
                Detection(
                    frame_idx=frame_idx,
                    bbox=bbox,  # type: ignore[arg-type]
                    score=score,
                    landmarks=landmarks,
                )
            )
        return detections

    def close(self) -> None:
        self.app = None
