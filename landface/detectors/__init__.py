"""Face detector and descriptor capabilities."""
