"""
Core package init for the landface capture and verification engine.

Makes the `landface` modules importable without requiring an editable install.
"""

__all__ = [
    "capture",
    "detectors",
    "quality",
    "recognition",
    "store",
    "config",
    "engine",
    "errors",
    "io_utils",
    "models",
    "types",
]
