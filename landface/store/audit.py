"""Access/consent audit trail."""

from __future__ import annotations

import csv
import logging
import threading
from pathlib import Path
from typing import Optional, Protocol

from landface.io_utils import ensure_dir
from landface.types import utcnow

LOGGER = logging.getLogger("landface.audit")

OPERATIONS = ("store", "verify", "update", "delete")
CSV_FIELDS = ["timestamp", "embedding_id", "operation", "success", "error_message"]


class AuditLogger(Protocol):
    def log_access(
        self,
        embedding_id: Optional[str],
        operation: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        ...


def _check_operation(operation: str) -> None:
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown audit operation {operation!r}; expected one of {OPERATIONS}")


class LoggingAuditLogger:
    """Writes one INFO line per access to the ``landface.audit`` logger."""

    def log_access(
        self,
        embedding_id: Optional[str],
        operation: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        _check_operation(operation)
        LOGGER.info(
            "access op=%s embedding=%s success=%s error=%s",
            operation,
            embedding_id or "-",
            success,
            error_message or "-",
        )


class CsvAuditLogger:
    """Append-only CSV audit file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def log_access(
        self,
        embedding_id: Optional[str],
        operation: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        _check_operation(operation)
        row = {
            "timestamp": utcnow().isoformat(),
            "embedding_id": embedding_id or "",
            "operation": operation,
            "success": success,
            "error_message": error_message or "",
        }
        with self._lock:
            ensure_dir(self.path.parent)
            new_file = not self.path.exists() or self.path.stat().st_size == 0
            with self.path.open("a", newline="", encoding="utf-8") as fh:
                writer = csv.DictWriter(fh, fieldnames=CSV_FIELDS)
                if new_file:
                    writer.writeheader()
                writer.writerow(row)
