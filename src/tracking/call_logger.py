# src/tracking/call_logger.py — v2
"""LLM call logging: one record per attempt, images reduced to fingerprints.

Records are kept in memory for the run and appended to the book's bounded
``llm_log`` table when a storage sink is attached. Sink failures are logged
and swallowed; observability must not fail a pipeline.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import struct
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bookweb.llm.models import ImagePart, Message, Usage
from bookweb.tracking.models import LLMCallRecord, UsageRecord

if TYPE_CHECKING:
    from bookweb.storage.book_storage import BookStorage

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def png_dimensions(data: bytes) -> tuple[int, int] | None:
    """Read (width, height) from a PNG IHDR chunk; None if not a PNG."""
    if len(data) < 24 or not data.startswith(_PNG_SIGNATURE):
        return None
    width, height = struct.unpack(">II", data[16:24])
    return width, height


def summarize_image(b64: str) -> dict[str, Any]:
    """Hash, approximate byte length and pixel size of a base64 image."""
    summary: dict[str, Any] = {
        "type": "image",
        "hash": hashlib.sha256(b64.encode("ascii", "ignore")).hexdigest()[:16],
        "byte_length": len(b64) * 3 // 4,
    }
    try:
        dims = png_dimensions(base64.b64decode(b64[:64] + "=" * (-len(b64[:64]) % 4)))
    except (binascii.Error, ValueError):
        dims = None
    if dims is not None:
        summary["width"], summary["height"] = dims
    return summary


def sanitize_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Message dicts safe for logs: image payloads replaced by summaries."""
    out: list[dict[str, Any]] = []
    for m in messages:
        if isinstance(m.content, str):
            out.append({"role": m.role, "content": m.content})
            continue
        parts: list[dict[str, Any]] = []
        for part in m.content:
            if isinstance(part, ImagePart):
                parts.append(summarize_image(part.data))
            else:
                parts.append({"type": "text", "text": part.text})
        out.append({"role": m.role, "content": parts})
    return out


class CallLogger:
    """Accumulates LLM call records and forwards them to a book's log."""

    def __init__(self, sink: BookStorage | None = None, max_entries: int = 250) -> None:
        self._records: list[LLMCallRecord] = []
        self._sink = sink
        self._max_entries = max_entries

    async def record(
        self,
        *,
        task_type: str,
        model_id: str,
        attempt: int,
        cache_hit: bool,
        duration_ms: int,
        usage: Usage,
        system: str | None,
        messages: list[Message],
        page_id: str | None = None,
        prompt_name: str | None = None,
        validation_errors: list[str] | None = None,
        error: str | None = None,
        error_type: str | None = None,
    ) -> LLMCallRecord:
        """Record one attempt.

        Args:
            task_type: Pipeline stage (e.g. "text-classification").
            attempt: 0-based attempt number within the logical call.
            validation_errors: Errors to report; each is truncated.
        """
        record = LLMCallRecord(
            timestamp=datetime.now(timezone.utc),
            task_type=task_type,
            page_id=page_id,
            prompt_name=prompt_name,
            model_id=model_id,
            cache_hit=cache_hit,
            attempt=attempt,
            duration_ms=duration_ms,
            usage=UsageRecord(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                total_tokens=usage.total_tokens,
            ),
            validation_errors=[e[:MAX_ERROR_CHARS] for e in (validation_errors or [])],
            error=error[:MAX_ERROR_CHARS] if error else None,
            error_type=error_type,
            system=system,
            messages=sanitize_messages(messages),
        )
        self._records.append(record)

        if self._sink is not None:
            try:
                await self._sink.append_llm_log(
                    record.model_dump(mode="json"), self._max_entries
                )
            except Exception as e:
                logger.warning("Failed to persist LLM log entry: %s", e)
        return record

    @property
    def records(self) -> list[LLMCallRecord]:
        """All recorded attempts."""
        return list(self._records)

    @property
    def total_tokens(self) -> int:
        return sum(r.usage.total_tokens for r in self._records)

    @property
    def total_calls(self) -> int:
        return len(self._records)


def save_jsonl(entries: list[dict[str, Any]], path: Path) -> None:
    """Write log entries to a JSON Lines file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for entry in entries:
            f.write(json.dumps(entry, default=str) + "\n")
