#!/usr/bin/env python3
"""CLI for verifying a live capture against enrolled faces."""

from __future__ import annotations

import argparse
import logging
from typing import List, Optional, Sequence

from landface.engine import build_engine
from landface.errors import LandFaceError
from landface.io_utils import dumps_json, setup_logging
from scripts.enroll_face import add_session_args, capture_embedding, resolve_config_path, session_overrides

LOGGER = logging.getLogger("scripts.verify")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Capture a face and verify it against the embedding store")
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Minimum cosine similarity for a match (default: verify_threshold from the config)",
    )
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--owner-filter", default=None, help="Case-insensitive substring of owner id or name")
    target.add_argument("--owner-id", default=None, help="1:1 check against this owner's best enrolled face")
    add_session_args(parser)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    engine = build_engine(
        resolve_config_path(args.config),
        overrides=session_overrides(args),
        store_path=args.store,
        audit_csv=args.audit_csv,
    )
    if args.threshold is None and engine.config.verify_threshold is None:
        LOGGER.error("No verification threshold: pass --threshold or set verify_threshold in the config")
        return 2
    try:
        capture = capture_embedding(engine, args)
        if args.owner_id:
            result = engine.verify_owner(args.owner_id, capture.embedding, args.threshold)
        else:
            result = engine.verify(capture.embedding, args.threshold, owner_filter=args.owner_filter)
    except LandFaceError as exc:
        LOGGER.error("%s (%s)", exc.user_message, exc)
        return 1

    payload = result.to_dict()
    payload["extraction_method"] = capture.extraction_method
    print(dumps_json(payload))
    return 0 if result.matched else 1


if __name__ == "__main__":
    raise SystemExit(main())
