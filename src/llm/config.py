# src/llm/config.py — v2
"""Model resolution for pipeline stages.

A model spec is either ``"provider:model-id"`` or a bare model id, in which
case the book's provider (or the settings default) applies. Resolution order:
  1. Stage ``model`` override from the book config
  2. LLM_DEFAULT_MODEL setting
  3. Provider default model
"""

from __future__ import annotations

from dataclasses import dataclass

from bookweb.config.settings import Settings

DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-20250514",
    "google": "gemini-2.0-flash",
}


@dataclass(frozen=True)
class LLMAssignment:
    """Resolved LLM provider:model for a stage."""

    provider: str
    model: str
    source: str  # "stage", "default", or "provider"

    @property
    def key(self) -> str:
        """Return 'provider:model' string."""
        return f"{self.provider}:{self.model}"


def parse_model_spec(spec: str, default_provider: str) -> tuple[str, str]:
    """Split 'provider:model' (or a bare model id) into (provider, model)."""
    spec = spec.strip()
    if ":" in spec:
        provider, model = spec.split(":", 1)
        return provider.strip(), model.strip()
    return default_provider, spec


def resolve_model(
    stage_model: str | None,
    settings: Settings,
    provider: str | None = None,
) -> LLMAssignment:
    """Resolve the provider and model for one stage.

    Args:
        stage_model: The stage's ``model`` override, if any.
        settings: Application settings.
        provider: The book's configured provider, if any.
    """
    default_provider = provider or settings.llm_default_provider

    if stage_model:
        p, m = parse_model_spec(stage_model, default_provider)
        return LLMAssignment(provider=p, model=m, source="stage")

    if settings.llm_default_model:
        p, m = parse_model_spec(settings.llm_default_model, default_provider)
        return LLMAssignment(provider=p, model=m, source="default")

    return LLMAssignment(
        provider=default_provider,
        model=DEFAULT_MODELS.get(default_provider, DEFAULT_MODELS["openai"]),
        source="provider",
    )
