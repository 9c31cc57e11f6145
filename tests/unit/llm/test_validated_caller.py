# tests/unit/llm/test_validated_caller.py — v1
"""Tests for llm/validated_caller.py — cached calls with validation retries."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import BaseModel

from bookweb.cache.content_cache import ContentCache
from bookweb.llm.models import Message
from bookweb.llm.retry import ValidationExhausted
from bookweb.llm.validated_caller import ValidatedCaller, ValidationResult, feedback_message


class Answer(BaseModel):
    reasoning: str
    value: int


def _must_be_even(obj):
    if obj["value"] % 2:
        return ValidationResult(valid=False, errors=[f"value {obj['value']} is odd"])
    return ValidationResult.ok()


def _caller(fake_llm, tmp_path: Path, **kwargs) -> ValidatedCaller:
    return ValidatedCaller(fake_llm, ContentCache(tmp_path / ".cache"), **kwargs)


MESSAGES = [Message(role="user", content="Pick a number")]


class TestGenerateObject:
    @pytest.mark.asyncio
    async def test_first_attempt_accepted(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [{"reasoning": "r", "value": 2}]
        result = await _caller(fake_llm, tmp_path).generate_object(
            schema=Answer, messages=MESSAGES, system="sys", validate=_must_be_even
        )
        assert result.object == {"reasoning": "r", "value": 2}
        assert result.attempts == 1
        assert result.cached is False
        assert result.usage.total_tokens == 15
        assert result.messages[-1].role == "assistant"

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [{"reasoning": "r", "value": 3}, {"reasoning": "r", "value": 4}]
        caller = _caller(fake_llm, tmp_path)
        result = await caller.generate_object(
            schema=Answer, messages=MESSAGES, validate=_must_be_even, max_retries=2
        )
        assert result.object["value"] == 4
        assert result.attempts == 2
        assert result.usage.total_tokens == 30

        # The retry saw the rejected answer and the error list.
        retry_messages = fake_llm.calls[1]["messages"]
        assert retry_messages[-2].role == "assistant"
        assert retry_messages[-1].content == feedback_message(["value 3 is odd"])

        records = caller.call_logger.records
        assert len(records) == 2
        assert records[0].validation_errors == ["value 3 is odd"]

    @pytest.mark.asyncio
    async def test_exhaustion(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [{"reasoning": "r", "value": 1}, {"reasoning": "r", "value": 3}]
        with pytest.raises(ValidationExhausted) as exc_info:
            await _caller(fake_llm, tmp_path).generate_object(
                schema=Answer, messages=MESSAGES, validate=_must_be_even, max_retries=1
            )
        assert exc_info.value.attempts == 2
        assert exc_info.value.errors == ["value 1 is odd", "value 3 is odd"]

    @pytest.mark.asyncio
    async def test_schema_errors_reported(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [{"reasoning": "r"}]
        with pytest.raises(ValidationExhausted) as exc_info:
            await _caller(fake_llm, tmp_path).generate_object(schema=Answer, messages=MESSAGES)
        assert exc_info.value.errors[0].startswith("value:")

    @pytest.mark.asyncio
    async def test_markdown_fences_tolerated(self, fake_llm, tmp_path: Path):
        fake_llm.responses = ['```json\n{"reasoning": "r", "value": 8}\n```']
        result = await _caller(fake_llm, tmp_path).generate_object(
            schema=Answer, messages=MESSAGES
        )
        assert result.object["value"] == 8


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_call_replays_cache(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [{"reasoning": "r", "value": 2}]
        caller = _caller(fake_llm, tmp_path)
        await caller.generate_object(schema=Answer, messages=MESSAGES)
        result = await caller.generate_object(schema=Answer, messages=MESSAGES)
        assert result.cached is True
        assert result.usage.total_tokens == 0
        assert fake_llm.call_count == 1

    @pytest.mark.asyncio
    async def test_rejected_answer_not_cached(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [{"reasoning": "r", "value": 3}, {"reasoning": "r", "value": 6}]
        caller = _caller(fake_llm, tmp_path)
        with pytest.raises(ValidationExhausted):
            await caller.generate_object(
                schema=Answer, messages=MESSAGES, validate=_must_be_even
            )
        result = await caller.generate_object(
            schema=Answer, messages=MESSAGES, validate=_must_be_even
        )
        assert result.object["value"] == 6
        assert fake_llm.call_count == 2

    @pytest.mark.asyncio
    async def test_stale_invalid_cache_entry_is_recomputed(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [{"reasoning": "r", "value": 5}, {"reasoning": "r", "value": 10}]
        caller = _caller(fake_llm, tmp_path)
        await caller.generate_object(schema=Answer, messages=MESSAGES)
        # Same request now carries a stricter validator: the cached 5 is busted.
        result = await caller.generate_object(
            schema=Answer, messages=MESSAGES, validate=_must_be_even, max_retries=1
        )
        assert result.object["value"] == 10
        assert caller.call_logger.records[1].cache_hit is True


class TestTransportErrors:
    @pytest.mark.asyncio
    async def test_retried_within_budget(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [RuntimeError("boom"), {"reasoning": "r", "value": 2}]
        caller = _caller(fake_llm, tmp_path)
        result = await caller.generate_object(schema=Answer, messages=MESSAGES, max_retries=1)
        assert result.attempts == 2
        assert caller.call_logger.records[0].error == "boom"
        assert caller.call_logger.records[0].error_type == "unknown"

    @pytest.mark.asyncio
    async def test_last_error_reraised(self, fake_llm, tmp_path: Path):
        fake_llm.responses = [RuntimeError("boom")]
        with pytest.raises(RuntimeError, match="boom"):
            await _caller(fake_llm, tmp_path).generate_object(schema=Answer, messages=MESSAGES)
