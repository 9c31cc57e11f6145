# src/pipeline/steps/__init__.py — v1
"""Per-stage step functions and their pipeline nodes."""
