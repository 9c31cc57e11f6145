# src/jobs/__init__.py — v1
"""In-process job queue and the executors for pipeline jobs."""
