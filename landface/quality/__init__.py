"""Per-detection quality scoring."""
