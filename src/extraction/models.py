# src/extraction/models.py — v1
"""Extraction result types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel, Field

from bookweb.storage.models import ExtractedPage, PdfMetadata


@dataclass(frozen=True)
class ExtractProgress:
    page: int
    total_pages: int


ExtractProgressCallback = Callable[[ExtractProgress], None]


class ExtractionResult(BaseModel):
    pages: list[ExtractedPage] = Field(default_factory=list)
    pdf_metadata: PdfMetadata = Field(default_factory=PdfMetadata)
    total_pages_in_pdf: int = 0

    @property
    def page_ids(self) -> list[str]:
        return [p.page_id for p in self.pages]
