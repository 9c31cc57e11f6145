# src/llm/validated_caller.py — v2
"""Cached, validated structured-output calls with conversational retry.

One logical call runs up to ``max_retries + 1`` attempts. Each attempt:
  1. keys the cache on the current (possibly retry-augmented) conversation
  2. replays a cached object or calls the model and caches its object
  3. validates against the response model, then the optional domain validator
  4. on failure busts the cache entry, appends the rejected object and an
     error list to the conversation, and tries again

Transport errors use the same budget and are re-raised on the last attempt.
Every attempt produces exactly one call-log record.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from bookweb.cache.content_cache import ContentCache, compute_cache_key
from bookweb.llm.base_client import BaseLLMClient
from bookweb.llm.models import Message, Usage
from bookweb.llm.retry import ValidationExhausted, classify_error, compute_delay
from bookweb.tracking.call_logger import CallLogger

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls(valid=True)


Validator = Callable[[dict[str, Any]], ValidationResult]


@dataclass
class CallResult:
    """Accepted object of a structured call."""

    object: dict[str, Any]
    usage: Usage
    cached: bool
    attempts: int
    messages: list[Message]


def feedback_message(errors: list[str]) -> str:
    """User turn asking the model to fix its previous answer."""
    bullets = "\n".join(f"- {e}" for e in errors)
    return (
        "Your previous response failed validation with these errors:\n"
        f"{bullets}\n\nPlease fix these issues and try again."
    )


def _schema_errors(error: ValidationError) -> list[str]:
    out: list[str] = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        out.append(f"{loc}: {err.get('msg', 'invalid')}")
    return out


def _parse_object(content: str) -> dict[str, Any]:
    """Parse the model's JSON, tolerating markdown fences."""
    text = content.strip()
    if text.startswith("```"):
        lines = [ln for ln in text.split("\n") if not ln.strip().startswith("```")]
        text = "\n".join(lines)
    obj = json.loads(text)
    if not isinstance(obj, dict):
        raise ValueError(f"Expected a JSON object, got {type(obj).__name__}")
    return obj


class ValidatedCaller:
    """Runs structured LLM calls through the content cache and call log."""

    def __init__(
        self,
        client: BaseLLMClient,
        cache: ContentCache,
        call_logger: CallLogger | None = None,
        max_tokens: int = 16384,
        temperature: float = 0.0,
    ) -> None:
        self._client = client
        self._cache = cache
        self._call_logger = call_logger or CallLogger()
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def model_id(self) -> str:
        return self._client.model_id

    @property
    def call_logger(self) -> CallLogger:
        return self._call_logger

    async def generate_object(
        self,
        *,
        schema: type[BaseModel],
        messages: list[Message],
        system: str | None = None,
        validate: Validator | None = None,
        max_retries: int = 0,
        task_type: str = "",
        page_id: str | None = None,
        prompt_name: str | None = None,
    ) -> CallResult:
        """Ask the model for an object matching ``schema``.

        Args:
            schema: Response model; its JSON schema is part of the cache key.
            messages: Conversation (system prompt passed separately).
            validate: Domain validator run after schema validation.
            max_retries: Extra attempts after the first (0 = single attempt).

        Raises:
            ValidationExhausted: If no attempt produced a valid object.
            Exception: The transport error of the last attempt, if it failed.
        """
        model_id = self._client.model_id
        schema_json = schema.model_json_schema()
        conversation = list(messages)
        usage = Usage()
        all_errors: list[str] = []
        total_attempts = max_retries + 1

        for attempt in range(total_attempts):
            start = time.monotonic()
            key = compute_cache_key(
                model_id,
                system,
                [m.model_dump(mode="json") for m in conversation],
                schema_json,
            )
            cache_hit = False

            try:
                cached = await self._cache.get(key)
                if cached is not None:
                    obj = cached
                    cache_hit = True
                else:
                    response = await self._client.complete(
                        conversation,
                        system=system,
                        max_tokens=self._max_tokens,
                        temperature=self._temperature,
                        response_format=schema,
                    )
                    usage.add(response)
                    obj = _parse_object(response.content)
            except Exception as e:
                error_type = classify_error(e)
                all_errors.append(f"{error_type}: {e}")
                await self._cache.bust(key)
                await self._log(
                    task_type, page_id, prompt_name, model_id, attempt, cache_hit, start,
                    usage, system, conversation, error=str(e), error_type=error_type,
                )
                if attempt == total_attempts - 1:
                    logger.error(
                        "%s call failed on final attempt %d/%d (%s): %s",
                        task_type or "LLM", attempt + 1, total_attempts, error_type, e,
                    )
                    raise
                delay = compute_delay(error_type, attempt)
                logger.warning(
                    "%s call failed (attempt %d/%d, %s), retrying in %.1fs: %s",
                    task_type or "LLM", attempt + 1, total_attempts, error_type, delay, e,
                )
                if delay:
                    await asyncio.sleep(delay)
                continue

            if not cache_hit:
                await self._cache.put(key, obj)

            errors = self._validate(schema, obj, validate)
            if errors:
                all_errors.extend(errors)
                await self._cache.bust(key)
                await self._log(
                    task_type, page_id, prompt_name, model_id, attempt, cache_hit, start,
                    usage, system, conversation, validation_errors=errors,
                )
                logger.info(
                    "%s validation failed (attempt %d/%d): %d errors",
                    task_type or "LLM", attempt + 1, total_attempts, len(errors),
                )
                conversation.append(
                    Message(role="assistant", content=json.dumps(obj, indent=2))
                )
                conversation.append(Message(role="user", content=feedback_message(errors)))
                continue

            await self._log(
                task_type, page_id, prompt_name, model_id, attempt, cache_hit, start,
                usage, system, conversation, validation_errors=all_errors,
            )
            conversation.append(Message(role="assistant", content=json.dumps(obj, indent=2)))
            return CallResult(
                object=obj,
                usage=usage,
                cached=cache_hit,
                attempts=attempt + 1,
                messages=conversation,
            )

        logger.error(
            "%s validation exhausted after %d attempts", task_type or "LLM", total_attempts
        )
        raise ValidationExhausted(total_attempts, all_errors)

    @staticmethod
    def _validate(
        schema: type[BaseModel], obj: dict[str, Any], validate: Validator | None
    ) -> list[str]:
        try:
            schema.model_validate(obj)
        except ValidationError as e:
            return _schema_errors(e)
        if validate is None:
            return []
        result = validate(obj)
        if result.valid:
            return []
        return list(result.errors) or ["Validation failed without details"]

    async def _log(
        self,
        task_type: str,
        page_id: str | None,
        prompt_name: str | None,
        model_id: str,
        attempt: int,
        cache_hit: bool,
        start: float,
        usage: Usage,
        system: str | None,
        conversation: list[Message],
        validation_errors: list[str] | None = None,
        error: str | None = None,
        error_type: str | None = None,
    ) -> None:
        await self._call_logger.record(
            task_type=task_type,
            page_id=page_id,
            prompt_name=prompt_name,
            model_id=model_id,
            attempt=attempt,
            cache_hit=cache_hit,
            duration_ms=int((time.monotonic() - start) * 1000),
            usage=usage.model_copy(),
            system=system,
            messages=conversation,
            validation_errors=validation_errors,
            error=error,
            error_type=error_type,
        )
