# src/config/book_config.py — v1
"""Per-book YAML configuration.

The base YAML (packaged default or BASE_CONFIG_PATH) is deep-merged with
``<books_root>/<label>/config.yaml``: mappings merge key-wise, lists and
scalars from the book file win. The merged tree is validated into BookConfig.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from bookweb.config.settings import ConfigurationError, Settings
from bookweb.storage import layout

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "default_config.yaml"

_DEFAULT_PROMPTS: dict[str, str] = {
    "metadata": "metadata_extraction",
    "text_classification": "text_classification",
    "page_sectioning": "page_sectioning",
    "web_rendering": "web_generation_html",
    "section_edit": "web_edit",
}

_DEFAULT_MAX_RETRIES: dict[str, int] = {
    "metadata": 0,
    "text_classification": 0,
    "page_sectioning": 2,
    "web_rendering": 2,
    "section_edit": 2,
}


class StageConfig(BaseModel):
    """Per-stage overrides. None means "use the stage default"."""

    prompt: str | None = None
    model: str | None = None
    concurrency: int | None = Field(default=None, ge=1)
    max_retries: int | None = Field(default=None, ge=0)


class SizeFilter(BaseModel):
    min_side: float | None = None
    max_side: float | None = None


class ImageFilters(BaseModel):
    size: SizeFilter = Field(default_factory=SizeFilter)


class BookConfig(BaseModel):
    """Merged configuration for one book."""

    text_types: dict[str, str] = Field(default_factory=dict)
    text_group_types: dict[str, str] = Field(default_factory=dict)
    section_types: dict[str, str] = Field(default_factory=dict)
    pruned_text_types: list[str] = Field(default_factory=list)
    pruned_section_types: list[str] = Field(default_factory=list)
    image_filters: ImageFilters = Field(default_factory=ImageFilters)

    pdf_path: str | None = None
    provider: Literal["openai", "anthropic", "google"] | None = None
    start_page: int | None = Field(default=None, ge=1)
    end_page: int | None = Field(default=None, ge=1)

    metadata: StageConfig = Field(default_factory=StageConfig)
    text_classification: StageConfig = Field(default_factory=StageConfig)
    page_sectioning: StageConfig = Field(default_factory=StageConfig)
    image_classification: StageConfig = Field(default_factory=StageConfig)
    web_rendering: StageConfig = Field(default_factory=StageConfig)
    section_edit: StageConfig = Field(default_factory=StageConfig)

    def stage(self, name: str) -> StageConfig:
        """Return the stage block by name (e.g. "web_rendering")."""
        return getattr(self, name)

    def prompt_for(self, stage: str) -> str:
        return self.stage(stage).prompt or _DEFAULT_PROMPTS[stage]

    def max_retries_for(self, stage: str) -> int:
        value = self.stage(stage).max_retries
        return _DEFAULT_MAX_RETRIES.get(stage, 0) if value is None else value

    def vocabulary(self, name: str) -> list[dict[str, str]]:
        """Return a key/description vocabulary in declaration order.

        Args:
            name: One of text_types, text_group_types, section_types.
        """
        mapping: dict[str, str] = getattr(self, name)
        return [{"key": k, "description": v} for k, v in mapping.items()]


def deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overrides`` into a copy of ``base``.

    Nested dicts recurse; lists, scalars and None take the override value.
    """
    result = dict(base)
    for key, over_val in overrides.items():
        base_val = result.get(key)
        if isinstance(base_val, dict) and isinstance(over_val, dict):
            result[key] = deep_merge(base_val, over_val)
        else:
            result[key] = over_val
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")
    return raw


def load_base_config(path: Path | None = None) -> dict[str, Any]:
    """Load the base configuration tree (unvalidated)."""
    return _read_yaml((path or DEFAULT_CONFIG_PATH).expanduser())


def load_book_config(label: str, settings: Settings) -> BookConfig:
    """Load and validate the merged configuration for a book.

    Raises:
        ConfigurationError: If either YAML file is malformed or the merged
            tree does not validate.
    """
    tree = load_base_config(settings.base_config_path)
    book_path = layout.book_config_path(settings.books_root_path, label)
    if book_path.exists():
        logger.debug("Merging book config %s", book_path)
        tree = deep_merge(tree, _read_yaml(book_path))
    try:
        return BookConfig.model_validate(tree)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration for book {label!r}: {e}") from e
