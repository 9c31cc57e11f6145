# src/llm/retry.py — v2
"""Retry vocabulary for structured LLM calls.

Validation failures and transport failures share one retry budget inside
ValidatedCaller. Transport errors are classified here so they can be logged
by type and, for transient types, backed off before the next attempt.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


class ValidationExhausted(Exception):
    """Every allowed attempt produced an invalid object."""

    def __init__(self, attempts: int, errors: list[str]):
        self.attempts = attempts
        self.errors = list(errors)
        super().__init__(
            f"Validation failed after {attempts} attempts. Errors:\n" + "\n".join(errors)
        )


@dataclass(frozen=True)
class BackoffConfig:
    """Delay applied before retrying after a transient transport error."""

    base_delay_s: float
    backoff_factor: float = 2.0
    jitter: bool = True


DEFAULT_BACKOFF: dict[str, BackoffConfig] = {
    "rate_limit": BackoffConfig(base_delay_s=2.0),
    "timeout": BackoffConfig(base_delay_s=1.0, backoff_factor=1.0),
    "server_error": BackoffConfig(base_delay_s=5.0),
}


def classify_error(error: Exception) -> str:
    """Classify an exception into a transport error type."""
    msg = str(error).lower()
    name = type(error).__name__.lower()

    if "429" in msg or "rate" in msg or "ratelimit" in name:
        return "rate_limit"
    if "timeout" in name or "timeout" in msg:
        return "timeout"
    if any(c in msg for c in ("500", "502", "503", "504", "server")):
        return "server_error"
    if "json" in msg or "parse" in msg or "decode" in msg:
        return "parse_error"
    if "token" in msg and ("limit" in msg or "exceed" in msg):
        return "token_limit"
    return "unknown"


def compute_delay(error_type: str, attempt: int) -> float:
    """Delay in seconds before the next attempt (0 for non-transient errors)."""
    config = DEFAULT_BACKOFF.get(error_type)
    if config is None:
        return 0.0
    delay = config.base_delay_s * (config.backoff_factor ** attempt)
    if config.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay
