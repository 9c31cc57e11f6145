# src/pipeline/book_runner.py — v1
"""Book-level runs: PDF extraction and LLM metadata."""

from __future__ import annotations

import logging

from bookweb.extraction.base_extractor import BaseExtractor
from bookweb.extraction.models import ExtractionResult, ExtractProgress
from bookweb.logging.context import bind_book
from bookweb.pipeline.events import ProgressEmitter, ProgressEvent
from bookweb.pipeline.node import PipelineContext, resolve_node
from bookweb.pipeline.schemas import METADATA, BookMetadata
from bookweb.pipeline.steps.metadata import metadata_node
from bookweb.storage.book_storage import BookStorage

logger = logging.getLogger(__name__)

EXTRACT = "extract"


async def run_extract(
    extractor: BaseExtractor,
    pdf_bytes: bytes,
    storage: BookStorage,
    progress: ProgressEmitter | None = None,
    start_page: int | None = None,
    end_page: int | None = None,
) -> ExtractionResult:
    """Extract a PDF into a book's storage.

    Writes go through put_pdf_metadata and put_extracted_page only.
    """
    bind_book(storage.label)
    progress = progress or ProgressEmitter()
    progress.emit(ProgressEvent(type="book-step-start", step=EXTRACT))

    def on_page(p: ExtractProgress) -> None:
        progress.emit(ProgressEvent(
            type="book-step-progress",
            step=EXTRACT,
            message=f"Extracting page {p.page}",
            page=p.page,
            total_pages=p.total_pages,
        ))

    try:
        result = await extractor.extract(pdf_bytes, start_page, end_page, on_progress=on_page)
        await storage.put_pdf_metadata(result.pdf_metadata)
        for page in result.pages:
            await storage.put_extracted_page(page)
        if await storage.get_book_metadata() is None:
            await storage.put_book_metadata(
                BookMetadata(title=result.pdf_metadata.title, reasoning="From PDF info"), "stub"
            )
    except Exception as e:
        logger.error("Extraction of %s failed: %s", storage.label, e)
        progress.emit(ProgressEvent(type="book-step-error", step=EXTRACT, error=str(e)))
        raise

    progress.emit(ProgressEvent(type="book-step-complete", step=EXTRACT))
    logger.info("Extracted %d pages into %s", len(result.pages), storage.label)
    return result


async def run_metadata(ctx: PipelineContext, force: bool = False) -> BookMetadata:
    """Extract book metadata from the first pages.

    Skipped when LLM metadata already exists, unless ``force``.
    """
    bind_book(ctx.label)
    run_ctx = ctx.derive(force=[METADATA] if force else [])
    return await resolve_node(metadata_node, run_ctx, ctx.label)
