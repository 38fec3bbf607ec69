"""Parquet-backed embedding store (pandas + pyarrow)."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd

from landface.errors import DuplicateEmbedding, EmbeddingNotFound, StoreUnavailable
from landface.io_utils import ensure_dir
from landface.store.base import (
    DEFAULT_RETENTION_YEARS,
    EmbeddingStore,
    build_record,
    filter_update_fields,
    to_utc_datetime,
)
from landface.types import EMBEDDING_DIM, EnrollmentRecord

LOGGER = logging.getLogger("landface.store.parquet")

COLUMNS = [
    "embedding_id",
    "owner_id",
    "owner_name",
    "embedding",
    "embedding_hash",
    "quality_score",
    "detection_confidence",
    "consent_given",
    "created_at",
    "retention_expires",
    "extraction_method",
]


class ParquetEmbeddingStore(EmbeddingStore):
    """Single parquet file holding every record.

    The file is read on every call, so several processes can share it for
    reads; writes within one process are serialized and replace the file
    atomically.
    """

    def __init__(
        self,
        path: Path,
        embedding_dim: int = EMBEDDING_DIM,
        retention_years: int = DEFAULT_RETENTION_YEARS,
    ) -> None:
        self.path = Path(path)
        self.embedding_dim = embedding_dim
        self.retention_years = retention_years
        self._lock = threading.Lock()

    def put(self, owner_id: str, embedding: Any, metadata: Optional[Mapping[str, Any]] = None) -> str:
        record = build_record(owner_id, embedding, metadata, self.embedding_dim, self.retention_years)
        with self._lock:
            records = self._read()
            for existing in records:
                if existing.owner_id == record.owner_id and existing.embedding_hash == record.embedding_hash:
                    raise DuplicateEmbedding(
                        f"Owner {record.owner_id!r} already has this embedding ({existing.embedding_id})"
                    )
            records.append(record)
            self._write(records)
        LOGGER.debug("Stored embedding %s owner=%s in %s", record.embedding_id, record.owner_id, self.path)
        return record.embedding_id

    def get(self, embedding_id: str) -> EnrollmentRecord:
        for record in self._read():
            if record.embedding_id == embedding_id:
                return record
        raise EmbeddingNotFound(embedding_id)

    def list_all(self) -> List[EnrollmentRecord]:
        return self._read()

    def update(self, embedding_id: str, fields: Mapping[str, Any]) -> EnrollmentRecord:
        changes = filter_update_fields(fields)
        with self._lock:
            records = self._read()
            for idx, record in enumerate(records):
                if record.embedding_id == embedding_id:
                    records[idx] = replace(record, **changes)
                    self._write(records)
                    return records[idx]
        raise EmbeddingNotFound(embedding_id)

    def delete(self, embedding_id: str) -> None:
        with self._lock:
            records = self._read()
            kept = [r for r in records if r.embedding_id != embedding_id]
            if len(kept) == len(records):
                raise EmbeddingNotFound(embedding_id)
            self._write(kept)

    def _read(self) -> List[EnrollmentRecord]:
        if not self.path.exists():
            return []
        try:
            df = pd.read_parquet(self.path)
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"Unable to read embedding store {self.path}: {exc}") from exc
        records = [_row_to_record(row) for row in df.to_dict(orient="records")]
        for record in records:
            if record.embedding.shape[0] != self.embedding_dim:
                raise StoreUnavailable(
                    f"Embedding store {self.path} holds {record.embedding.shape[0]}-d embeddings "
                    f"({record.embedding_id}), expected {self.embedding_dim}"
                )
        return records

    def _write(self, records: List[EnrollmentRecord]) -> None:
        rows = [record.to_dict() for record in records]
        df = pd.DataFrame(rows, columns=COLUMNS)
        ensure_dir(self.path.parent)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            df.to_parquet(tmp_path, index=False)
            os.replace(tmp_path, self.path)
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"Unable to write embedding store {self.path}: {exc}") from exc


def _normalize_embedding(raw) -> np.ndarray:
    """Convert parquet-loaded embedding column into a 1D float32 vector."""
    if isinstance(raw, np.ndarray):
        if raw.dtype == object or raw.ndim > 1:
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = raw.astype(np.float32)
    else:
        arr = np.asarray(raw, dtype=np.float32)
    return arr.reshape(-1).astype(np.float32)


def _optional_float(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _optional_str(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    return str(value)


def _row_to_record(row: Dict[str, Any]) -> EnrollmentRecord:
    return EnrollmentRecord(
        embedding_id=str(row["embedding_id"]),
        owner_id=str(row["owner_id"]),
        owner_name=_optional_str(row.get("owner_name")),
        embedding=_normalize_embedding(row["embedding"]),
        embedding_hash=str(row.get("embedding_hash") or ""),
        quality_score=_optional_float(row.get("quality_score")),
        detection_confidence=_optional_float(row.get("detection_confidence")),
        consent_given=bool(row.get("consent_given")),
        created_at=to_utc_datetime(row.get("created_at")),
        retention_expires=to_utc_datetime(row.get("retention_expires")),
        extraction_method=_optional_str(row.get("extraction_method")) or "insightface",
    )
