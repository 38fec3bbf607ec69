"""Public operations: capture sessions, enrollment, verification, search."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

import pandas as pd

from landface.capture.camera import CameraFactory
from landface.capture.session import CaptureSession
from landface.config import EngineConfig, load_config
from landface.errors import EmbeddingNotFound, LandFaceError, StoreUnavailable
from landface.io_utils import load_yaml
from landface.models import ModelContext
from landface.recognition.extractor import prepare_embedding
from landface.recognition.matcher import OwnerFilter, SimilarityMatcher, cosine_similarity
from landface.store.audit import AuditLogger, CsvAuditLogger, LoggingAuditLogger
from landface.store.base import EmbeddingStore
from landface.store.parquet import ParquetEmbeddingStore
from landface.types import CaptureResult, EnrollmentRecord, MatchResult, VerificationResult, iter_batches, utcnow

LOGGER = logging.getLogger("landface.engine")

DEFAULT_STORE_PATH = Path("data/embeddings.parquet")

BatchItem = Union[Mapping[str, Any], Tuple[str, Any], Tuple[str, Any, Mapping[str, Any]]]


class FaceEngine:
    """Entry point the application talks to.

    Verification and search are stateless and safe to call concurrently; each
    call reads the store afresh. Every store/verify/update/delete call is
    reported to the audit logger exactly once, and a failing audit logger
    never fails the operation.
    """

    def __init__(
        self,
        store: EmbeddingStore,
        config: Optional[EngineConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        matcher: Optional[SimilarityMatcher] = None,
    ) -> None:
        self.store_backend = store
        self.config = config or EngineConfig()
        self.audit_logger = audit_logger or LoggingAuditLogger()
        self.matcher = matcher or SimilarityMatcher()
        self._sessions: Set[CaptureSession] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ capture
    def start_capture(
        self,
        session_config: Optional[Union[EngineConfig, Mapping[str, Any]]] = None,
        models: Optional[ModelContext] = None,
        camera_factory: Optional[CameraFactory] = None,
    ) -> CaptureSession:
        if session_config is None:
            config = self.config
        elif isinstance(session_config, EngineConfig):
            config = session_config
        else:
            config = self.config.with_overrides(session_config)
        session = CaptureSession(config, models=models, camera_factory=camera_factory)
        session.start()
        with self._lock:
            self._sessions.add(session)
        return session

    def stop_capture(self, handle: CaptureSession) -> None:
        handle.stop()
        with self._lock:
            self._sessions.discard(handle)

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions)
            self._sessions.clear()
        for session in sessions:
            session.stop()

    # ------------------------------------------------------------------ records
    def store(self, owner_id: str, embedding: Any, metadata: Optional[Mapping[str, Any]] = None) -> str:
        try:
            embedding_id = self.store_backend.put(owner_id, embedding, metadata)
        except (LandFaceError, ValueError) as exc:
            self._audit(None, "store", False, str(exc))
            raise
        self._audit(embedding_id, "store", True)
        LOGGER.info("Stored embedding %s for owner %s", embedding_id, owner_id)
        return embedding_id

    def update(self, embedding_id: str, **fields: Any) -> EnrollmentRecord:
        try:
            record = self.store_backend.update(embedding_id, fields)
        except LandFaceError as exc:
            self._audit(embedding_id, "update", False, str(exc))
            raise
        self._audit(embedding_id, "update", True)
        return record

    def delete(self, embedding_id: str) -> None:
        try:
            self.store_backend.delete(embedding_id)
        except LandFaceError as exc:
            self._audit(embedding_id, "delete", False, str(exc))
            raise
        self._audit(embedding_id, "delete", True)
        LOGGER.info("Deleted embedding %s", embedding_id)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        try:
            purged = self.store_backend.purge_expired(now)
        except LandFaceError as exc:
            self._audit(None, "delete", False, str(exc))
            raise
        self._audit(None, "delete", True)
        return purged

    def batch_store(self, items: Iterable[BatchItem], batch_size: int = 10) -> List[Dict[str, Any]]:
        """Store many embeddings; one failure never aborts the rest."""
        report: List[Dict[str, Any]] = []
        entries = list(items)
        for batch_no, batch in enumerate(iter_batches(entries, batch_size)):
            for item in batch:
                index = len(report)
                owner_id, embedding, metadata = _unpack_batch_item(item)
                try:
                    embedding_id = self.store(owner_id, embedding, metadata)
                except (LandFaceError, ValueError) as exc:
                    report.append(
                        {"index": index, "owner_id": owner_id, "success": False, "embedding_id": None, "error": str(exc)}
                    )
                else:
                    report.append(
                        {"index": index, "owner_id": owner_id, "success": True, "embedding_id": embedding_id, "error": None}
                    )
            LOGGER.debug("Batch %d processed (%d items)", batch_no, len(batch))
        stored = sum(1 for row in report if row["success"])
        LOGGER.info("Batch store finished: %d/%d stored", stored, len(report))
        return report

    def statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        records = self.store_backend.list_all()
        if not records:
            return {
                "total": 0,
                "with_consent": 0,
                "average_quality": 0.0,
                "average_confidence": 0.0,
                "recent_count": 0,
            }
        df = pd.DataFrame(
            {
                "quality_score": [r.quality_score for r in records],
                "detection_confidence": [r.detection_confidence for r in records],
                "consent_given": [bool(r.consent_given) for r in records],
                "created_at": [r.created_at for r in records],
            }
        )
        cutoff = (now or utcnow()) - timedelta(hours=24)
        created = pd.to_datetime(df["created_at"], utc=True)
        quality = pd.to_numeric(df["quality_score"], errors="coerce")
        confidence = pd.to_numeric(df["detection_confidence"], errors="coerce")
        return {
            "total": int(len(df)),
            "with_consent": int(df["consent_given"].sum()),
            "average_quality": float(quality.mean()) if quality.notna().any() else 0.0,
            "average_confidence": float(confidence.mean()) if confidence.notna().any() else 0.0,
            "recent_count": int((created > pd.Timestamp(cutoff)).sum()),
        }

    # ------------------------------------------------------------------ matching
    def verify(
        self,
        query_embedding: Any,
        threshold: Optional[float] = None,
        owner_filter: Optional[OwnerFilter] = None,
    ) -> VerificationResult:
        """1:N check over every consented record.

        ``threshold`` falls back to ``config.verify_threshold``; with neither set
        the call is refused with ``ValueError``.
        """
        try:
            limit = self._verify_threshold(threshold)
            query = prepare_embedding(query_embedding, self.config.embedding_dim)
        except ValueError as exc:
            self._audit(None, "verify", False, str(exc))
            raise
        try:
            candidates = list(self.store_backend.list_with_consent())
        except StoreUnavailable as exc:
            LOGGER.warning("Verification could not read the store: %s", exc)
            self._audit(None, "verify", False, str(exc))
            return VerificationResult(
                matched=False,
                status="store_unavailable",
                message="Could not check your face right now; please try again later",
            )
        result = self.matcher.verify(query, candidates, limit, owner_filter)
        self._audit(result.best.embedding_id if result.best else None, "verify", result.matched)
        return result

    def verify_owner(
        self, owner_id: str, query_embedding: Any, threshold: Optional[float] = None
    ) -> VerificationResult:
        """1:1 check against the best consented record of one owner."""
        try:
            limit = self._verify_threshold(threshold)
            query = prepare_embedding(query_embedding, self.config.embedding_dim)
            record = self.store_backend.get_by_owner(owner_id)
        except EmbeddingNotFound as exc:
            self._audit(None, "verify", False, str(exc))
            return VerificationResult(matched=False, status="no_match", message=f"No enrolled face for {owner_id}")
        except StoreUnavailable as exc:
            LOGGER.warning("Owner verification could not read the store: %s", exc)
            self._audit(None, "verify", False, str(exc))
            return VerificationResult(
                matched=False,
                status="store_unavailable",
                message="Could not check your face right now; please try again later",
            )
        except (LandFaceError, ValueError) as exc:
            self._audit(None, "verify", False, str(exc))
            raise
        similarity = cosine_similarity(query, record.embedding)
        match = MatchResult(
            owner_id=record.owner_id,
            similarity=similarity,
            rank=1,
            embedding_id=record.embedding_id,
            owner_name=record.owner_name,
        )
        matched = similarity >= limit
        self._audit(record.embedding_id, "verify", matched)
        if matched:
            return VerificationResult(
                matched=True, best=match, top_matches=[match], status="matched", message="Face verified successfully"
            )
        return VerificationResult(matched=False, diagnostics=[match], status="no_match", message="Face does not match")

    def find_similar(
        self,
        query_embedding: Any,
        threshold: Optional[float] = None,
        exclude_owner_id: Optional[str] = None,
    ) -> List[MatchResult]:
        """Near-duplicate lookup, audited as a "verify" access.

        Unlike :meth:`verify` it does not fail safe: ``StoreUnavailable`` is
        raised so enrollment cannot silently skip the duplicate check.
        """
        limit = self.config.dedup_threshold if threshold is None else threshold
        try:
            query = prepare_embedding(query_embedding, self.config.embedding_dim)
            candidates = list(self.store_backend.list_with_consent())
        except LandFaceError as exc:
            self._audit(None, "verify", False, str(exc))
            raise
        hits = self.matcher.find_similar(query, candidates, limit, exclude_owner_id)
        self._audit(hits[0].embedding_id if hits else None, "verify", True)
        return hits

    def _verify_threshold(self, threshold: Optional[float]) -> float:
        if threshold is None:
            threshold = self.config.verify_threshold
        if threshold is None:
            raise ValueError("A verification threshold is required; pass one or set verify_threshold")
        return float(threshold)

    # ------------------------------------------------------------------ audit
    def _audit(
        self,
        embedding_id: Optional[str],
        operation: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            self.audit_logger.log_access(embedding_id, operation, success, error_message)
        except Exception as exc:
            LOGGER.warning("Audit logging failed for %s(%s): %s", operation, embedding_id, exc)


def _unpack_batch_item(item: BatchItem) -> Tuple[str, Any, Optional[Mapping[str, Any]]]:
    if isinstance(item, Mapping):
        metadata = item.get("metadata")
        if metadata is None:
            metadata = {k: v for k, v in item.items() if k not in ("owner_id", "embedding")}
        return str(item.get("owner_id", "")), item.get("embedding"), metadata
    if len(item) == 3:
        owner_id, embedding, metadata = item  # type: ignore[misc]
        return owner_id, embedding, metadata
    owner_id, embedding = item  # type: ignore[misc]
    return owner_id, embedding, None


def capture_metadata(
    capture: CaptureResult, consent_given: bool, owner_name: Optional[str] = None
) -> Dict[str, Any]:
    """Store metadata for a :class:`~landface.types.CaptureResult`."""
    return {
        "quality_score": float(capture.quality),
        "detection_confidence": float(capture.detection.score),
        "consent_given": consent_given,
        "owner_name": owner_name,
        "extraction_method": capture.extraction_method,
    }


def build_engine(
    config_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    store_path: Optional[Path] = None,
    audit_csv: Optional[Path] = None,
) -> FaceEngine:
    """Engine over a parquet store, configured from YAML (``engine``/``store`` sections)."""
    config = load_config(config_path, overrides)
    section: Dict[str, Any] = {}
    if config_path is not None:
        section = load_yaml(Path(config_path)).get("store") or {}
    path = Path(store_path or section.get("path") or DEFAULT_STORE_PATH)
    audit_path = audit_csv or section.get("audit_csv")
    store = ParquetEmbeddingStore(path, embedding_dim=config.embedding_dim, retention_years=config.retention_years)
    audit: AuditLogger = CsvAuditLogger(Path(audit_path)) if audit_path else LoggingAuditLogger()
    LOGGER.info("Engine store=%s audit=%s", path, audit_path or "logging")
    return FaceEngine(store, config, audit)
