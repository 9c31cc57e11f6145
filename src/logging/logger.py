# src/logging/logger.py — v3
"""Logger setup for the ``bookweb`` logger tree.

JSON lines carry the pipeline coordinates (book, page_id, step, job_id) as
top-level keys so a log file can be filtered per book or per job. The text
format prints them as ``<book> [page] (step) {job}``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bookweb.logging.context import LogContext, get_context
from bookweb.logging.handlers import create_file_handler

if TYPE_CHECKING:
    from bookweb.config.settings import Settings

ROOT_LOGGER = "bookweb"

# SDK and HTTP loggers that are chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "fitz")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, pipeline coordinates at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(get_context().as_dict())

        data = getattr(record, "data", None)
        if data:
            entry["data"] = data
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _coordinates(ctx: LogContext) -> list[str]:
    parts = []
    if ctx.book:
        parts.append(f"<{ctx.book}>")
    if ctx.page_id:
        parts.append(f"[{ctx.page_id}]")
    if ctx.step:
        parts.append(f"({ctx.step})")
    if ctx.job_id:
        parts.append(f"{{{ctx.job_id[:8]}}}")
    return parts


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            f"[{record.levelname:8s}]",
            record.name,
            *_coordinates(get_context()),
            f"- {record.getMessage()}",
        ]
        line = " ".join(parts)
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    log_file: str | Path | None = None,
    rotation: str = "10MB",
    retention: int = 5,
) -> None:
    """Configure the root ``bookweb`` logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        log_format: "json" or "text".
        log_file: Also write to this file (None = stdout only).
        rotation: Size ("10MB") or interval ("1d", "midnight"); see handlers.
        retention: Number of rotated files to keep.
    """
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Re-init replaces handlers
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = JsonFormatter() if log_format == "json" else TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = create_file_handler(log_file, rotation=rotation, retention=retention)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    """Apply the LOG_* settings; ``verbose`` forces DEBUG for bookweb only."""
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
