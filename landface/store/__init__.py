"""Embedding store adapters and audit logging."""
