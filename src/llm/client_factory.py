# src/llm/client_factory.py — v4
"""Build the LLM client for a resolved ``provider:model`` assignment.

Matches the ``ClientFactory`` signature used by LLMFactory:
``(provider, model, settings) -> BaseLLMClient``. Adapters import their SDK
lazily, so the SDK check here turns a missing optional install (the
``google`` extra) into a clear error at client creation instead of at the
first call.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
from typing import NamedTuple

from bookweb.config.settings import Settings
from bookweb.llm.base_client import BaseLLMClient

logger = logging.getLogger(__name__)


class ProviderSpec(NamedTuple):
    adapter: str
    sdk_module: str
    install_hint: str


PROVIDERS: dict[str, ProviderSpec] = {
    "anthropic": ProviderSpec(
        "bookweb.llm.adapters.anthropic_adapter.AnthropicAdapter",
        "anthropic",
        "pip install anthropic",
    ),
    "openai": ProviderSpec(
        "bookweb.llm.adapters.openai_adapter.OpenAIAdapter",
        "openai",
        "pip install openai",
    ),
    "google": ProviderSpec(
        "bookweb.llm.adapters.google_adapter.GoogleAdapter",
        "google.generativeai",
        "pip install 'bookweb[google]'",
    ),
}


class UnsupportedProviderError(ValueError):
    """The book config names a provider with no adapter."""


class ProviderUnavailable(RuntimeError):
    """The provider's SDK is not installed."""

    def __init__(self, provider: str, spec: ProviderSpec):
        self.provider = provider
        super().__init__(
            f"LLM provider {provider!r} needs the {spec.sdk_module} package: {spec.install_hint}"
        )


def available_providers() -> list[str]:
    return sorted(PROVIDERS)


def create_llm_client(
    provider: str,
    model: str,
    settings: Settings | None = None,
) -> BaseLLMClient:
    """Instantiate the adapter for ``provider`` serving ``model``.

    The API key comes from ``settings`` (``<provider>_api_key``); without
    one the SDK falls back to its own environment variables.

    Raises:
        UnsupportedProviderError: If the provider has no adapter.
        ProviderUnavailable: If the provider's SDK is not installed.
    """
    spec = PROVIDERS.get(provider)
    if spec is None:
        raise UnsupportedProviderError(
            f"Unsupported LLM provider: {provider!r}. "
            f"Available: {', '.join(available_providers())}"
        )
    if not _sdk_installed(spec.sdk_module):
        raise ProviderUnavailable(provider, spec)

    api_key = settings.api_key_for(provider) if settings is not None else ""
    if not api_key:
        logger.debug("No %s API key in settings, relying on the SDK environment", provider)

    module_path, class_name = spec.adapter.rsplit(".", 1)
    adapter_cls = getattr(importlib.import_module(module_path), class_name)
    logger.debug("Creating LLM client %s:%s", provider, model)
    return adapter_cls(model=model, api_key=api_key)


def _sdk_installed(module: str) -> bool:
    try:
        return importlib.util.find_spec(module) is not None
    except ModuleNotFoundError:
        return False
