"""Embedding extraction, descriptor backends and similarity matching."""
