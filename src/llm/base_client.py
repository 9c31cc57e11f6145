# src/llm/base_client.py — v2
"""Abstract LLM client interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from bookweb.llm.models import LLMResponse, Message


class BaseLLMClient(ABC):
    """Unified interface for all LLM providers.

    Messages may carry image parts; ``response_format`` requests structured
    JSON output matching the model's schema, returned as the response text.
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.0,
        response_format: type[BaseModel] | None = None,
    ) -> LLMResponse:
        """Single completion."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Model identifier sent to the provider."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier (openai, anthropic, google)."""

    @property
    def supports_vision(self) -> bool:
        return True
