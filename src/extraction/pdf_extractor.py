# src/extraction/pdf_extractor.py — v2
"""PDF extractor using PyMuPDF (fitz).

For every page in range it extracts the text layer, a PNG render of the
whole page (``<pageId>_page``) and each embedded raster image
(``<pageId>_im001``...). Requires the 'pymupdf' package.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from bookweb.extraction.base_extractor import BaseExtractor, page_range
from bookweb.extraction.models import (
    ExtractionResult,
    ExtractProgress,
    ExtractProgressCallback,
)
from bookweb.storage import layout
from bookweb.storage.models import ExtractedImage, ExtractedPage, PdfMetadata

logger = logging.getLogger(__name__)

DEFAULT_RENDER_DPI = 150

_METADATA_KEYS = {
    "title": "title",
    "author": "author",
    "subject": "subject",
    "keywords": "keywords",
    "creator": "creator",
    "producer": "producer",
    "creationDate": "creation_date",
    "modDate": "modification_date",
    "format": "format",
    "encryption": "encryption",
}


class PdfExtractor(BaseExtractor):
    """Extractor for PDF files using PyMuPDF."""

    def __init__(self, dpi: int = DEFAULT_RENDER_DPI) -> None:
        self._dpi = dpi

    @property
    def supported_extensions(self) -> list[str]:
        return [".pdf"]

    async def extract(
        self,
        content: bytes,
        start_page: int | None = None,
        end_page: int | None = None,
        on_progress: ExtractProgressCallback | None = None,
    ) -> ExtractionResult:
        try:
            import fitz  # PyMuPDF
        except ImportError as e:
            raise ImportError(
                "pymupdf package required for PDF extraction: pip install pymupdf"
            ) from e

        doc = fitz.open(stream=content, filetype="pdf")
        try:
            total = doc.page_count
            selected = page_range(total, start_page, end_page)
            pages: list[ExtractedPage] = []
            for page_number in selected:
                pages.append(self._extract_page(doc, page_number, fitz))
                if on_progress is not None:
                    on_progress(ExtractProgress(page=page_number, total_pages=total))
            metadata = _pdf_metadata(doc.metadata or {})
        finally:
            doc.close()

        logger.info("Extracted %d of %d pages", len(pages), total)
        return ExtractionResult(pages=pages, pdf_metadata=metadata, total_pages_in_pdf=total)

    def _extract_page(self, doc: Any, page_number: int, fitz: Any) -> ExtractedPage:
        page = doc[page_number - 1]
        page_id = layout.page_id_for(page_number)

        render = page.get_pixmap(dpi=self._dpi)
        page_image = _image(layout.page_image_id(page_id), page_id, render)

        images: list[ExtractedImage] = []
        for info in page.get_images(full=True):
            xref = info[0]
            try:
                pix = fitz.Pixmap(doc, xref)
                if pix.n - pix.alpha >= 4:
                    pix = fitz.Pixmap(fitz.csRGB, pix)
            except Exception as e:
                logger.warning("Skipping image xref %d on page %d: %s", xref, page_number, e)
                continue
            image_id = layout.embedded_image_id(page_id, len(images) + 1)
            images.append(_image(image_id, page_id, pix))

        return ExtractedPage(
            page_id=page_id,
            page_number=page_number,
            text=page.get_text("text"),
            page_image=page_image,
            images=images,
        )


def _image(image_id: str, page_id: str, pix: Any) -> ExtractedImage:
    png = pix.tobytes("png")
    return ExtractedImage(
        image_id=image_id,
        page_id=page_id,
        png=png,
        width=pix.width,
        height=pix.height,
        hash=hashlib.sha256(png).hexdigest(),
    )


def _pdf_metadata(raw: dict[str, Any]) -> PdfMetadata:
    data = {ours: raw.get(theirs) or None for theirs, ours in _METADATA_KEYS.items()}
    return PdfMetadata(**data)
