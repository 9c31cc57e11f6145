# src/pipeline/llm_factory.py — v2
"""LLM factory — creates per-stage LLM clients using config routing.

Resolves provider:model for each stage via the cascade in
``bookweb.llm.config.resolve_model`` (stage override → default model →
provider default) and instantiates the adapter through the client factory.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from bookweb.llm.client_factory import create_llm_client
from bookweb.llm.config import resolve_model

if TYPE_CHECKING:
    from bookweb.config.book_config import BookConfig
    from bookweb.config.settings import Settings
    from bookweb.llm.base_client import BaseLLMClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., "BaseLLMClient"]


class LLMFactory:
    """Create and cache LLM clients per stage.

    Clients are cached by (provider, model) key so stages and books sharing
    the same assignment reuse a single client instance.
    """

    def __init__(
        self, settings: Settings, client_factory: ClientFactory = create_llm_client
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory
        self._clients: dict[str, BaseLLMClient] = {}

    def get_client(self, stage: str, config: BookConfig) -> BaseLLMClient:
        """Get or create the LLM client for a stage of a book.

        Args:
            stage: Config stage name (e.g. "web_rendering").
            config: The book's merged configuration.
        """
        assignment = resolve_model(config.stage(stage).model, self._settings, config.provider)
        cache_key = assignment.key

        if cache_key not in self._clients:
            self._clients[cache_key] = self._client_factory(
                assignment.provider, assignment.model, self._settings
            )
            logger.info(
                "Created LLM client for '%s': %s (source: %s)",
                stage,
                cache_key,
                assignment.source,
            )
        else:
            logger.debug("Reusing cached LLM client for '%s': %s", stage, cache_key)

        return self._clients[cache_key]

    def clear(self) -> None:
        self._clients.clear()
