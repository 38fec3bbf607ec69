"""Engine configuration dataclass and YAML loading."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from landface.io_utils import load_yaml
from landface.types import EMBEDDING_DIM

LOGGER = logging.getLogger("landface.config")

DETECTOR_BACKENDS = ("retinaface", "haar")


@dataclass
class EngineConfig:
    # Stability gate
    stability_threshold: int = 10
    quality_threshold: float = 0.7
    capture_delay_ms: float = 3000.0
    # Extraction
    padding_px: int = 20
    embedding_dim: int = EMBEDDING_DIM
    # Search
    dedup_threshold: float = 0.9
    # Used only when a verify call passes no threshold of its own
    verify_threshold: Optional[float] = None
    # Capture loop
    tick_hz: float = 15.0
    camera_index: int = 0
    frame_width: int = 640
    frame_height: int = 480
    detector_backend: str = "retinaface"
    det_thresh: float = 0.5
    providers: Optional[tuple] = None
    # Never enabled implicitly; replaces the descriptor model with synthetic vectors
    simulation_mode: bool = False
    # Store
    retention_years: int = 7

    def __post_init__(self) -> None:
        if self.stability_threshold < 1:
            raise ValueError("stability_threshold must be >= 1")
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise ValueError("quality_threshold must be within [0, 1]")
        if self.capture_delay_ms < 0:
            raise ValueError("capture_delay_ms must be >= 0")
        if self.verify_threshold is not None and not 0.0 <= self.verify_threshold <= 1.0:
            raise ValueError("verify_threshold must be within [0, 1]")
        if self.padding_px < 0:
            raise ValueError("padding_px must be >= 0")
        if self.embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        if self.tick_hz <= 0:
            raise ValueError("tick_hz must be > 0")
        if self.detector_backend not in DETECTOR_BACKENDS:
            raise ValueError(
                f"detector_backend must be one of {DETECTOR_BACKENDS}, got {self.detector_backend!r}"
            )
        if self.providers is not None:
            self.providers = tuple(self.providers)

    @property
    def capture_delay_s(self) -> float:
        return self.capture_delay_ms / 1000.0

    @property
    def tick_interval_s(self) -> float:
        return 1.0 / self.tick_hz

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from snake_case or camelCase keys."""
        return cls().with_overrides(data)

    def with_overrides(self, data: Mapping[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(self)}
        updates: Dict[str, Any] = {}
        for key, value in data.items():
            name = _snake_case(key)
            if name not in known:
                raise ValueError(f"Unknown config option: {key}")
            if value is None and name != "providers":
                continue
            updates[name] = value
        return replace(self, **updates)


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def load_config(path: Optional[Path] = None, overrides: Optional[Mapping[str, Any]] = None) -> EngineConfig:
    """Load an EngineConfig from YAML (section ``engine`` or top level) plus overrides."""
    config = EngineConfig()
    if path is not None:
        data = load_yaml(Path(path))
        section = data.get("engine", data)
        config = config.with_overrides(section)
        LOGGER.info("Loaded engine config from %s", path)
    if overrides:
        config = config.with_overrides(overrides)
    return config
