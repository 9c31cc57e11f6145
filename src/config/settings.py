# src/config/settings.py — v2
"""Typed process settings loaded from .env via pydantic-settings.

Single source of truth for deployment-specific settings: where books live,
which LLM provider to default to, queue sizing and logging. Per-book
vocabularies and stage overrides live in YAML (see config/book_config.py).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is missing or internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from environment and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Storage ===
    books_root: Path = Path("books")
    base_config_path: Path | None = None

    # === Cache ===
    # Global force-recompute switch: bypass cache reads, keep writing.
    recache: bool = False

    # === Job queue ===
    queue_concurrency: int = 16
    job_retention_seconds: int = 3600

    # === LLM providers ===
    llm_default_provider: Literal["openai", "anthropic", "google"] = "openai"
    llm_default_model: str = ""
    llm_max_tokens: int = 16384
    llm_temperature: float = 0.0

    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_api_key: str = ""

    # === Pipeline ===
    metadata_page_count: int = 3
    llm_log_max_entries: int = 250

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 5

    # --- Validators ---

    @field_validator("queue_concurrency", "metadata_page_count", "llm_log_max_entries")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:  # noqa: N805
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Cross-field rules that pydantic types cannot express."""
        errors: list[str] = []

        if self.job_retention_seconds < 0:
            errors.append("JOB_RETENTION_SECONDS must be >= 0")

        if self.llm_default_model and ":" in self.llm_default_model:
            provider = self.llm_default_model.split(":", 1)[0]
            if provider not in ("openai", "anthropic", "google"):
                errors.append(
                    f"LLM_DEFAULT_MODEL names unknown provider {provider!r}"
                )

        if self.base_config_path is not None and not self.base_config_path.expanduser().exists():
            errors.append(f"BASE_CONFIG_PATH does not exist: {self.base_config_path}")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def books_root_path(self) -> Path:
        """Expanded, absolute books root."""
        return self.books_root.expanduser().resolve()

    def api_key_for(self, provider: str) -> str:
        """Return the configured API key for a provider ('' when unset)."""
        return getattr(self, f"{provider}_api_key", "")


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or CLI flags).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
