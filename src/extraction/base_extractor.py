# src/extraction/base_extractor.py — v2
"""Abstract extractor interface for book sources."""

from __future__ import annotations

from abc import ABC, abstractmethod

from bookweb.extraction.models import ExtractionResult, ExtractProgressCallback


class BaseExtractor(ABC):
    """Turns a source document into pages, page renders and embedded images."""

    @property
    @abstractmethod
    def supported_extensions(self) -> list[str]:
        """File extensions this extractor handles (e.g., ['.pdf'])."""

    @abstractmethod
    async def extract(
        self,
        content: bytes,
        start_page: int | None = None,
        end_page: int | None = None,
        on_progress: ExtractProgressCallback | None = None,
    ) -> ExtractionResult:
        """Extract pages ``start_page..end_page`` (1-indexed, inclusive)."""


def page_range(total: int, start_page: int | None, end_page: int | None) -> range:
    """Clamp an inclusive 1-indexed range to the document.

    Raises:
        ValueError: If the range selects no page.
    """
    start = max(1, start_page or 1)
    end = min(total, end_page or total)
    if start > end:
        raise ValueError(
            f"Page range {start_page or 1}-{end_page or total} selects no page "
            f"of a {total}-page document"
        )
    return range(start, end + 1)
