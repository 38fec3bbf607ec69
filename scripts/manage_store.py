#!/usr/bin/env python3
"""CLI for embedding store maintenance: stats, retention purge, import, erasure."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from tqdm import tqdm

from landface.engine import FaceEngine, build_engine
from landface.errors import LandFaceError
from landface.io_utils import dumps_json, load_json, setup_logging
from landface.types import iter_batches
from scripts.enroll_face import resolve_config_path

LOGGER = logging.getLogger("scripts.store")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the face embedding store")
    parser.add_argument("--config", type=Path, default=None, help="Engine YAML config")
    parser.add_argument("--store", type=Path, default=None, help="Parquet embedding store path")
    parser.add_argument("--audit-csv", type=Path, default=None, help="Append audit entries to this CSV")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Print store statistics as JSON")
    sub.add_parser("purge-expired", help="Delete records past their retention date")

    imp = sub.add_parser("import", help="Import embeddings from a JSON list")
    imp.add_argument("json_path", type=Path, help="JSON list of {owner_id, embedding, ...metadata}")
    imp.add_argument("--batch-size", type=int, default=10, help="Records per batch")

    delete = sub.add_parser("delete", help="Erase one embedding by id")
    delete.add_argument("embedding_id")

    consent = sub.add_parser("consent", help="Grant or revoke consent for one embedding")
    consent.add_argument("embedding_id")
    consent.add_argument("--revoke", action="store_true", help="Revoke instead of grant")
    return parser.parse_args(argv)


def import_records(engine: FaceEngine, items: List[Dict[str, Any]], batch_size: int = 10) -> Dict[str, Any]:
    report: List[Dict[str, Any]] = []
    batches = list(iter_batches(items, batch_size))
    for batch in tqdm(batches, desc="Importing", unit="batch"):
        offset = len(report)
        for row in engine.batch_store(batch, batch_size=batch_size):
            row["index"] += offset
            report.append(row)
    failures = [row for row in report if not row["success"]]
    for row in failures:
        LOGGER.warning("Import item %d (%s) failed: %s", row["index"], row["owner_id"], row["error"])
    return {"total": len(report), "stored": len(report) - len(failures), "failed": len(failures), "items": report}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()

    engine = build_engine(resolve_config_path(args.config), store_path=args.store, audit_csv=args.audit_csv)
    try:
        if args.command == "stats":
            print(dumps_json(engine.statistics()))
        elif args.command == "purge-expired":
            purged = engine.purge_expired()
            print(dumps_json({"purged": purged}))
        elif args.command == "import":
            items = load_json(args.json_path)
            if not isinstance(items, list):
                LOGGER.error("%s must contain a JSON list", args.json_path)
                return 1
            summary = import_records(engine, items, args.batch_size)
            print(dumps_json({k: v for k, v in summary.items() if k != "items"}))
            return 0 if summary["failed"] == 0 else 1
        elif args.command == "delete":
            engine.delete(args.embedding_id)
            print(dumps_json({"deleted": args.embedding_id}))
        elif args.command == "consent":
            record = engine.update(args.embedding_id, consent_given=not args.revoke)
            print(dumps_json({"embedding_id": record.embedding_id, "consent_given": record.consent_given}))
    except LandFaceError as exc:
        LOGGER.error("%s (%s)", exc.user_message, exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
