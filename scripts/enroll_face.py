#!/usr/bin/env python3
"""CLI for enrolling an owner's face from a live capture session."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from landface.capture.camera import OpenCVCamera, parse_camera_source
from landface.capture.session import wait_for_capture
from landface.config import DETECTOR_BACKENDS
from landface.engine import build_engine, capture_metadata
from landface.errors import LandFaceError
from landface.io_utils import dumps_json, setup_logging
from landface.recognition.matcher import top_similarities

LOGGER = logging.getLogger("scripts.enroll")

DEFAULT_CONFIG = Path("configs/engine.yaml")


def add_session_args(parser: argparse.ArgumentParser) -> None:
    """Options shared by the capture-driven CLIs."""
    parser.add_argument("--config", type=Path, default=None, help="Engine YAML config (default configs/engine.yaml if present)")
    parser.add_argument("--store", type=Path, default=None, help="Parquet embedding store path")
    parser.add_argument("--audit-csv", type=Path, default=None, help="Append audit entries to this CSV")
    parser.add_argument(
        "--camera",
        type=str,
        default=None,
        help="Camera index or video file/URL (defaults to camera_index from config)",
    )
    parser.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for a stable capture")
    parser.add_argument("--detector", choices=DETECTOR_BACKENDS, default=None, help="Detector backend")
    parser.add_argument("--embedding-dim", type=int, default=None, help="Override embedding dimension")
    parser.add_argument(
        "--simulation",
        action="store_true",
        help="Use synthetic descriptors (demo only, never for real enrollment)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")


def session_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {
        "detector_backend": args.detector,
        "embedding_dim": args.embedding_dim,
    }
    if args.simulation:
        overrides["simulation_mode"] = True
    return overrides


def resolve_config_path(path: Optional[Path]) -> Optional[Path]:
    if path is not None:
        return path
    return DEFAULT_CONFIG if DEFAULT_CONFIG.exists() else None


def capture_embedding(engine, args: argparse.Namespace):
    config = engine.config
    source = parse_camera_source(args.camera) if args.camera is not None else config.camera_index

    def camera_factory() -> OpenCVCamera:
        return OpenCVCamera(source, config.frame_width, config.frame_height)

    session = engine.start_capture(config, camera_factory=camera_factory)
    LOGGER.info("Look at the camera; capture starts once the face is stable")
    try:
        return wait_for_capture(session, args.timeout)
    finally:
        engine.stop_capture(session)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Capture a face and enroll it for an owner")
    parser.add_argument("--owner-id", required=True, help="Record/owner identifier")
    parser.add_argument("--owner-name", default=None, help="Owner display name (used by name filters)")
    parser.add_argument(
        "--consent",
        action="store_true",
        help="Owner consented to biometric storage; without it the record is never matched",
    )
    parser.add_argument(
        "--allow-duplicates",
        action="store_true",
        help="Store even when the face closely matches another owner",
    )
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
    try:
        capture = capture_embedding(engine, args)
        duplicates = engine.find_similar(capture.embedding, exclude_owner_id=args.owner_id)
        if duplicates:
            LOGGER.warning("Face resembles other owners: %s", top_similarities(duplicates))
            if not args.allow_duplicates:
                LOGGER.error("Refusing to enroll a likely duplicate; pass --allow-duplicates to override")
                return 2
        embedding_id = engine.store(
            args.owner_id,
            capture.embedding,
            capture_metadata(capture, consent_given=args.consent, owner_name=args.owner_name),
        )
    except LandFaceError as exc:
        LOGGER.error("%s (%s)", exc.user_message, exc)
        return 1

    print(
        dumps_json(
            {
                "embedding_id": embedding_id,
                "owner_id": args.owner_id,
                "quality": capture.quality,
                "detection_confidence": capture.detection.score,
                "extraction_method": capture.extraction_method,
                "consent_given": args.consent,
            }
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
