# src/logging/handlers.py — v3
"""Rotating file handler for the LOG_FILE setting.

``LOG_ROTATION`` chooses the policy: a size ("10MB", "512KB") rotates by
size, an interval ("12h", "1d", "midnight") rotates by time. In both cases
``LOG_RETENTION`` is the number of rotated files kept.
"""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path

_SIZE_RE = re.compile(r"^(\d+)\s*(KB|MB|GB)$", re.IGNORECASE)
_INTERVAL_RE = re.compile(r"^(\d+)\s*([hd])$", re.IGNORECASE)
_SIZE_UNITS = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}


def _parse_size(size_str: str) -> int:
    """Parse a size like '10MB' into bytes (KB, MB, GB; any case)."""
    match = _SIZE_RE.match(size_str.strip())
    if not match:
        raise ValueError(f"Invalid size format: {size_str!r}. Use e.g. '10MB'.")
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]


def _parse_interval(rotation: str) -> tuple[str, int] | None:
    """Map '12h' / '1d' / 'midnight' to TimedRotatingFileHandler (when, interval)."""
    text = rotation.strip().lower()
    if text == "midnight":
        return "midnight", 1
    match = _INTERVAL_RE.match(text)
    if not match:
        return None
    return match.group(2).upper(), int(match.group(1))


def create_file_handler(
    log_file: str | Path,
    rotation: str = "10MB",
    retention: int = 5,
) -> logging.Handler:
    """File handler rotating by size or by time, creating the parent directory.

    Raises:
        ValueError: If ``rotation`` is neither a size nor an interval.
    """
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    interval = _parse_interval(rotation)
    if interval is not None:
        when, every = interval
        return TimedRotatingFileHandler(
            filename=str(path),
            when=when,
            interval=every,
            backupCount=retention,
            encoding="utf-8",
        )
    return RotatingFileHandler(
        filename=str(path),
        maxBytes=_parse_size(rotation),
        backupCount=retention,
        encoding="utf-8",
    )
