# tests/unit/extraction/test_pdf_extractor.py — v1
"""Tests for extraction/pdf_extractor.py against PDFs built with PyMuPDF."""

from __future__ import annotations

import pytest

from bookweb.extraction.models import ExtractProgress
from bookweb.extraction.pdf_extractor import PdfExtractor

fitz = pytest.importorskip("fitz")


def _pdf(pages: int = 2, title: str = "Sample") -> bytes:
    doc = fitz.open()
    for n in range(1, pages + 1):
        page = doc.new_page(width=300, height=400)
        page.insert_text((50, 72), f"Hello from page {n}")
    doc.set_metadata({"title": title, "author": "Someone"})
    data = doc.tobytes()
    doc.close()
    return data


class TestPdfExtractor:
    @pytest.mark.asyncio
    async def test_extracts_pages(self):
        progress: list[ExtractProgress] = []
        result = await PdfExtractor(dpi=72).extract(_pdf(2), on_progress=progress.append)

        assert result.total_pages_in_pdf == 2
        assert result.page_ids == ["pg001", "pg002"]
        first = result.pages[0]
        assert "Hello from page 1" in first.text
        assert first.page_image.image_id == "pg001_page"
        assert first.page_image.png.startswith(b"\x89PNG")
        assert (first.page_image.width, first.page_image.height) == (300, 400)
        assert first.images == []
        assert result.pdf_metadata.title == "Sample"
        assert result.pdf_metadata.author == "Someone"
        assert progress == [ExtractProgress(1, 2), ExtractProgress(2, 2)]

    @pytest.mark.asyncio
    async def test_page_range(self):
        result = await PdfExtractor(dpi=72).extract(_pdf(3), start_page=2, end_page=2)
        assert result.page_ids == ["pg002"]
        assert result.pages[0].page_number == 2
        assert result.total_pages_in_pdf == 3

    @pytest.mark.asyncio
    async def test_out_of_range(self):
        with pytest.raises(ValueError, match="selects no page"):
            await PdfExtractor().extract(_pdf(1), start_page=4)
