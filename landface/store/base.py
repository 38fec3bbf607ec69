"""Embedding store contract and record construction helpers."""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional

import numpy as np
import pandas as pd

from landface.errors import EmbeddingNotFound, InvalidEmbedding
from landface.recognition.extractor import prepare_embedding
from landface.types import EMBEDDING_DIM, EnrollmentRecord, embedding_hash, utcnow

LOGGER = logging.getLogger("landface.store")

DEFAULT_RETENTION_YEARS = 7
UPDATABLE_FIELDS = ("quality_score", "detection_confidence", "consent_given", "retention_expires")
RECORD_METADATA = UPDATABLE_FIELDS + ("owner_name", "created_at", "extraction_method")


def coerce_embedding(raw: Any, dim: int = EMBEDDING_DIM) -> np.ndarray:
    """Accept only a flat numeric array; serialized forms are refused."""
    if isinstance(raw, (str, bytes)):
        raise InvalidEmbedding("Embedding must be a numeric array, not a serialized string")
    return prepare_embedding(raw, dim)


def retention_deadline(created_at: datetime, years: int = DEFAULT_RETENTION_YEARS) -> datetime:
    try:
        return created_at.replace(year=created_at.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return created_at.replace(year=created_at.year + years, day=28)


def to_utc_datetime(value: Any) -> Optional[datetime]:
    """Timezone-aware UTC datetime from a datetime, timestamp or ISO string.

    Naive values are taken to be UTC. Missing values give None.
    """
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Not a valid timestamp: {value!r}") from exc
    if pd.isna(ts):
        return None
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    else:
        ts = ts.tz_convert("UTC")
    return ts.to_pydatetime()


def _coerce_metadata(fields: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if key in ("quality_score", "detection_confidence"):
            out[key] = None if value is None else float(value)
        elif key == "consent_given":
            out[key] = bool(value)
        elif key in ("created_at", "retention_expires"):
            out[key] = to_utc_datetime(value)
        else:
            out[key] = value
    return out


def filter_update_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only the metadata fields an update may change."""
    allowed = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
    ignored = sorted(set(fields) - set(allowed))
    if ignored:
        LOGGER.warning("Ignoring non-updatable fields: %s", ", ".join(ignored))
    return _coerce_metadata(allowed)


def build_record(
    owner_id: str,
    embedding: Any,
    metadata: Optional[Mapping[str, Any]] = None,
    embedding_dim: int = EMBEDDING_DIM,
    retention_years: int = DEFAULT_RETENTION_YEARS,
) -> EnrollmentRecord:
    if not owner_id:
        raise ValueError("owner_id is required")
    vec = coerce_embedding(embedding, embedding_dim)
    meta = dict(metadata or {})
    ignored = sorted(set(meta) - set(RECORD_METADATA))
    if ignored:
        LOGGER.warning("Ignoring unknown metadata fields: %s", ", ".join(ignored))
    meta = _coerce_metadata({k: v for k, v in meta.items() if k in RECORD_METADATA})
    created_at = meta.pop("created_at", None) or utcnow()
    retention = meta.pop("retention_expires", None) or retention_deadline(created_at, retention_years)
    return EnrollmentRecord(
        embedding_id=uuid.uuid4().hex,
        owner_id=str(owner_id),
        embedding=vec,
        embedding_hash=embedding_hash(vec),
        created_at=created_at,
        retention_expires=retention,
        **meta,
    )


class EmbeddingStore(ABC):
    """Narrow persistence contract the engine talks to.

    Implementations own the records. Callers never get a cache: every read
    reflects the store at call time.
    """

    embedding_dim: int = EMBEDDING_DIM
    retention_years: int = DEFAULT_RETENTION_YEARS

    @abstractmethod
    def put(self, owner_id: str, embedding: Any, metadata: Optional[Mapping[str, Any]] = None) -> str:
        """Persist a new record and return its embedding id."""

    @abstractmethod
    def get(self, embedding_id: str) -> EnrollmentRecord:
        ...

    @abstractmethod
    def list_all(self) -> List[EnrollmentRecord]:
        """All records in insertion order, consented or not."""

    @abstractmethod
    def update(self, embedding_id: str, fields: Mapping[str, Any]) -> EnrollmentRecord:
        ...

    @abstractmethod
    def delete(self, embedding_id: str) -> None:
        ...

    def get_by_owner(self, owner_id: str, now: Optional[datetime] = None) -> EnrollmentRecord:
        """Highest-quality consented, unexpired record of ``owner_id``."""
        best: Optional[EnrollmentRecord] = None
        for record in self.list_with_consent(now):
            if record.owner_id != owner_id:
                continue
            if best is None or _quality_key(record) > _quality_key(best):
                best = record
        if best is None:
            raise EmbeddingNotFound(owner_id, f"No consented embedding for owner {owner_id!r}")
        return best

    def list_with_consent(self, now: Optional[datetime] = None) -> Iterator[EnrollmentRecord]:
        """Lazily yield consented records whose retention has not expired."""
        moment = now or utcnow()
        for record in self.list_all():
            if record.consent_given and not record.is_expired(moment):
                yield record

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        moment = now or utcnow()
        expired = [r.embedding_id for r in self.list_all() if r.is_expired(moment)]
        for embedding_id in expired:
            self.delete(embedding_id)
        if expired:
            LOGGER.info("Purged %d expired embeddings", len(expired))
        return len(expired)


def _quality_key(record: EnrollmentRecord) -> float:
    return -1.0 if record.quality_score is None else record.quality_score
