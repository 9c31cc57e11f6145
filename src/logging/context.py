# src/logging/context.py — v2
"""Contextual logging support — attach book, page_id, step, job_id to log records.

Values live in context variables. Each asyncio Task copies the context on
creation, so concurrent page pipelines each see their own values.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_book: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "book", default=None
)
_page_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "page_id", default=None
)
_step: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "step", default=None
)
_job_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "job_id", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    book: str | None = None
    page_id: str | None = None
    step: str | None = None
    job_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        book=_book.get(),
        page_id=_page_id.get(),
        step=_step.get(),
        job_id=_job_id.get(),
    )


def bind_book(book: str) -> None:
    """Set book-level context (per runner or job)."""
    _book.set(book)


def bind_job(job_id: str, book: str | None = None) -> None:
    """Set job-level context (called by the queue before running an executor)."""
    _job_id.set(job_id)
    if book is not None:
        _book.set(book)


def bind_step(step: str, page_id: str | None = None) -> None:
    """Set step-level context (called per node execution)."""
    _step.set(step)
    if page_id is not None:
        _page_id.set(page_id)


def clear_context() -> None:
    """Reset all context variables."""
    _book.set(None)
    _page_id.set(None)
    _step.set(None)
    _job_id.set(None)
