"""In-process embedding store."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from landface.errors import DuplicateEmbedding, EmbeddingNotFound
from landface.store.base import DEFAULT_RETENTION_YEARS, EmbeddingStore, build_record, filter_update_fields
from landface.types import EMBEDDING_DIM, EnrollmentRecord

LOGGER = logging.getLogger("landface.store.memory")


class InMemoryEmbeddingStore(EmbeddingStore):
    """Thread-safe dict-backed store; contents vanish with the process."""

    def __init__(self, embedding_dim: int = EMBEDDING_DIM, retention_years: int = DEFAULT_RETENTION_YEARS) -> None:
        self.embedding_dim = embedding_dim
        self.retention_years = retention_years
        self._records: Dict[str, EnrollmentRecord] = {}
        self._lock = threading.Lock()

    def put(self, owner_id: str, embedding: Any, metadata: Optional[Mapping[str, Any]] = None) -> str:
        record = build_record(owner_id, embedding, metadata, self.embedding_dim, self.retention_years)
        with self._lock:
            for existing in self._records.values():
                if existing.owner_id == record.owner_id and existing.embedding_hash == record.embedding_hash:
                    raise DuplicateEmbedding(
                        f"Owner {record.owner_id!r} already has this embedding ({existing.embedding_id})"
                    )
            self._records[record.embedding_id] = record
        LOGGER.debug("Stored embedding %s owner=%s", record.embedding_id, record.owner_id)
        return record.embedding_id

    def get(self, embedding_id: str) -> EnrollmentRecord:
        with self._lock:
            try:
                return self._records[embedding_id]
            except KeyError:
                raise EmbeddingNotFound(embedding_id) from None

    def list_all(self) -> List[EnrollmentRecord]:
        with self._lock:
            return list(self._records.values())

    def update(self, embedding_id: str, fields: Mapping[str, Any]) -> EnrollmentRecord:
        changes = filter_update_fields(fields)
        with self._lock:
            if embedding_id not in self._records:
                raise EmbeddingNotFound(embedding_id)
            record = replace(self._records[embedding_id], **changes)
            self._records[embedding_id] = record
        return record

    def delete(self, embedding_id: str) -> None:
        with self._lock:
            if self._records.pop(embedding_id, None) is None:
                raise EmbeddingNotFound(embedding_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
