# src/extraction/extractor_factory.py — v3
"""Factory: instantiate an extractor from a file extension."""

from __future__ import annotations

from pathlib import Path

from bookweb.extraction.base_extractor import BaseExtractor
from bookweb.extraction.pdf_extractor import PdfExtractor

# Registry maps extension → extractor class.
_EXTRACTOR_REGISTRY: dict[str, type[BaseExtractor]] = {".pdf": PdfExtractor}


class UnsupportedFormatError(ValueError):
    """Raised when no extractor is available for a format."""


def create_extractor(source: str | Path) -> BaseExtractor:
    """Create an extractor for a file path or an extension.

    Raises:
        UnsupportedFormatError: If no extractor is registered.
    """
    text = str(source)
    ext = Path(text).suffix.lower() if "." in Path(text).name[1:] else text.lower()
    if not ext.startswith("."):
        ext = f".{ext}"

    cls = _EXTRACTOR_REGISTRY.get(ext)
    if cls is None:
        raise UnsupportedFormatError(
            f"No extractor for format {ext!r}. "
            f"Supported: {', '.join(sorted(_EXTRACTOR_REGISTRY))}"
        )
    return cls()


def register_extractor(extension: str, cls: type[BaseExtractor]) -> None:
    """Register a custom extractor for an extension."""
    _EXTRACTOR_REGISTRY[extension.lower()] = cls


def supported_extensions() -> list[str]:
    return sorted(_EXTRACTOR_REGISTRY)
