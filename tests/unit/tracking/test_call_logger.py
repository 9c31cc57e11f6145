# tests/unit/tracking/test_call_logger.py — v2
"""Tests for tracking/call_logger.py — per-attempt LLM call records."""

from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from bookweb.llm.models import ImagePart, Message, TextPart, Usage
from bookweb.storage.book_storage import BookStorage
from bookweb.tracking.call_logger import (
    CallLogger,
    png_dimensions,
    sanitize_messages,
    save_jsonl,
    summarize_image,
)


def _record_kwargs(**overrides):
    kwargs = dict(
        task_type="text-classification",
        model_id="fake-model",
        attempt=0,
        cache_hit=False,
        duration_ms=12,
        usage=Usage(input_tokens=100, output_tokens=20),
        system="sys",
        messages=[Message(role="user", content="hi")],
    )
    kwargs.update(overrides)
    return kwargs


class TestImageSummaries:
    def test_png_dimensions(self, png_bytes: bytes):
        assert png_dimensions(png_bytes) == (3, 2)

    def test_non_png(self):
        assert png_dimensions(b"GIF89a" + b"\x00" * 30) is None

    def test_summarize_image(self, png_bytes: bytes):
        b64 = base64.b64encode(png_bytes).decode("ascii")
        summary = summarize_image(b64)
        assert summary["type"] == "image"
        assert len(summary["hash"]) == 16
        assert (summary["width"], summary["height"]) == (3, 2)

    def test_sanitize_replaces_image_payload(self, png_bytes: bytes):
        b64 = base64.b64encode(png_bytes).decode("ascii")
        messages = [
            Message(role="user", content=[TextPart(text="look"), ImagePart(data=b64)])
        ]
        out = sanitize_messages(messages)
        parts = out[0]["content"]
        assert parts[0] == {"type": "text", "text": "look"}
        assert "data" not in parts[1]
        assert b64 not in json.dumps(out)


class TestCallLogger:
    @pytest.mark.asyncio
    async def test_record_accumulates(self):
        logger = CallLogger()
        await logger.record(**_record_kwargs())
        await logger.record(**_record_kwargs(attempt=1, cache_hit=True))
        assert logger.total_calls == 2
        assert logger.total_tokens == 240
        assert logger.records[1].cache_hit is True

    @pytest.mark.asyncio
    async def test_errors_truncated(self):
        logger = CallLogger()
        record = await logger.record(
            **_record_kwargs(validation_errors=["x" * 900], error="e" * 900)
        )
        assert len(record.validation_errors[0]) == 500
        assert len(record.error) == 500

    @pytest.mark.asyncio
    async def test_persists_to_storage(self, storage: BookStorage):
        logger = CallLogger(sink=storage, max_entries=10)
        await logger.record(**_record_kwargs(page_id="pg001"))
        entries = await storage.list_llm_log()
        assert len(entries) == 1
        assert entries[0]["page_id"] == "pg001"
        assert entries[0]["usage"]["total_tokens"] == 120

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(self):
        class BrokenSink:
            async def append_llm_log(self, entry, max_entries):
                raise OSError("disk full")

        logger = CallLogger(sink=BrokenSink())  # type: ignore[arg-type]
        await logger.record(**_record_kwargs())
        assert logger.total_calls == 1


class TestSaveJsonl:
    def test_writes_lines(self, tmp_path: Path):
        path = tmp_path / "out" / "log.jsonl"
        save_jsonl([{"a": 1}, {"b": 2}], path)
        lines = path.read_text(encoding="utf-8").splitlines()
        assert [json.loads(ln) for ln in lines] == [{"a": 1}, {"b": 2}]
