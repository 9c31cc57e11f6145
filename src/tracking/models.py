# src/tracking/models.py — v2
"""Tracking domain models: one LLMCallRecord per structured-call attempt."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class UsageRecord(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class LLMCallRecord(BaseModel):
    """Individual LLM call attempt log entry.

    Image parts in ``messages`` are replaced by a hash/size/dimensions summary.
    """

    timestamp: datetime
    task_type: str
    page_id: str | None = None
    prompt_name: str | None = None
    model_id: str
    cache_hit: bool
    attempt: int
    duration_ms: int
    usage: UsageRecord = Field(default_factory=UsageRecord)
    validation_errors: list[str] = Field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    system: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
