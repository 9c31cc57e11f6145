# src/pipeline/events.py — v1
"""Progress events emitted by runners alongside (not instead of) results."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

EventType = Literal[
    "step-start",
    "step-progress",
    "step-complete",
    "step-error",
    "book-step-start",
    "book-step-progress",
    "book-step-complete",
    "book-step-error",
]


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    step: str
    page_id: str | None = None
    message: str | None = None
    version: int | None = None
    error: str | None = None
    page: int | None = None
    total_pages: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def describe(self) -> str:
        """One-line human summary, used by the CLI and job progress."""
        where = f"{self.step}" + (f" [{self.page_id}]" if self.page_id else "")
        if self.type.endswith("error"):
            return f"{where} failed: {self.error}"
        if self.message:
            return f"{where}: {self.message}"
        if self.type.endswith("complete"):
            suffix = f" (v{self.version})" if self.version is not None else ""
            return f"{where} done{suffix}"
        return f"{where} started"


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """Fan-out of progress events to an optional callback.

    Callback exceptions are logged and swallowed.
    """

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback

    def emit(self, event: ProgressEvent) -> None:
        logger.debug("progress: %s", event.describe())
        if self._callback is None:
            return
        try:
            self._callback(event)
        except Exception as e:
            logger.warning("Progress callback raised, ignoring: %s", e)
