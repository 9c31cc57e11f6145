# src/service.py — v2
"""Book service: the single owner of process-wide state.

Holds the database registry (open connections + deleted labels), the node
store, the LLM client cache, the job queue with its executor table, and the
per-key locks and stage limits shared by every pipeline context.
Create one per process (or per test) and call shutdown() when done.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterable

from bookweb.config.book_config import load_book_config
from bookweb.config.settings import ConfigurationError, Settings
from bookweb.extraction.base_extractor import BaseExtractor
from bookweb.extraction.extractor_factory import create_extractor
from bookweb.extraction.models import ExtractionResult
from bookweb.jobs.executors import register_executors
from bookweb.jobs.job_queue import JobQueue
from bookweb.jobs.models import JobParams, MetadataJob
from bookweb.llm.client_factory import create_llm_client
from bookweb.pipeline.actions import build_context
from bookweb.pipeline.book_runner import run_extract
from bookweb.pipeline.events import ProgressCallback, ProgressEmitter
from bookweb.pipeline.llm_factory import ClientFactory, LLMFactory
from bookweb.pipeline.node import KeyLocks, PipelineContext, StageLimiter
from bookweb.storage import layout
from bookweb.storage.book_storage import BookStorage
from bookweb.storage.db import BookDatabase
from bookweb.storage.node_store import NodeStore

logger = logging.getLogger(__name__)


class BookService:
    """Entry point for book lifecycle, pipeline contexts and queued jobs."""

    def __init__(
        self,
        settings: Settings,
        client_factory: ClientFactory = create_llm_client,
    ) -> None:
        self._settings = settings
        self.database = BookDatabase(settings.books_root_path)
        self.nodes = NodeStore(self.database)
        self.llm = LLMFactory(settings, client_factory)
        self.locks = KeyLocks()
        self.limiter = StageLimiter()
        self.queue = JobQueue(
            concurrency=settings.queue_concurrency,
            retention_seconds=settings.job_retention_seconds,
        )
        register_executors(self.queue, self)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def books_root(self) -> Path:
        return self._settings.books_root_path

    # --- Books ---

    def storage(self, label: str) -> BookStorage:
        return BookStorage(label, self.database, self.nodes)

    def list_books(self) -> list[str]:
        """Labels of every book on disk that is not marked deleted."""
        if not self.books_root.exists():
            return []
        return sorted(
            d.name
            for d in self.books_root.iterdir()
            if layout.db_path(self.books_root, d.name).exists()
            and not self.database.is_deleted(d.name)
        )

    async def create_book(
        self,
        pdf_path: str | Path | None = None,
        label: str | None = None,
        start_page: int | None = None,
        end_page: int | None = None,
        extractor: BaseExtractor | None = None,
        progress: ProgressCallback | None = None,
    ) -> tuple[str, ExtractionResult]:
        """Import a PDF as a book (or reimport over a deleted label).

        When the book already has a ``config.yaml``, its ``pdf_path`` (relative
        to the book directory) and ``start_page``/``end_page`` fill in the
        arguments left out.

        Returns:
            The book label and the extraction result.

        Raises:
            ConfigurationError: If no PDF path is given or configured.
        """
        if label is None:
            if pdf_path is None:
                raise ConfigurationError("A PDF path or a book label is required")
            label = layout.slug_from_path(Path(pdf_path))
        if not label:
            raise ValueError(f"Cannot derive a book label from {pdf_path}")

        config = load_book_config(label, self._settings)
        if pdf_path is None:
            if not config.pdf_path:
                raise ConfigurationError(f"Book {label!r} has no pdf_path configured")
            path = layout.book_dir(self.books_root, label) / Path(config.pdf_path).expanduser()
        else:
            path = Path(pdf_path)
        start_page = start_page if start_page is not None else config.start_page
        end_page = end_page if end_page is not None else config.end_page

        self.undelete_book(label)
        result = await run_extract(
            extractor or create_extractor(path),
            path.read_bytes(),
            self.storage(label),
            ProgressEmitter(progress),
            start_page=start_page,
            end_page=end_page,
        )
        return label, result

    async def reimport_book(
        self,
        label: str,
        extractor: BaseExtractor | None = None,
        progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        """Re-extract a book from the PDF and page range in its config.yaml."""
        _, result = await self.create_book(
            label=label, extractor=extractor, progress=progress
        )
        logger.info("Reimported %s (%d pages)", label, len(result.pages))
        return result

    def delete_book(self, label: str, remove_files: bool = True) -> None:
        """Fail the book's jobs, mark it deleted and (by default) remove its files."""
        self.queue.fail_jobs_for_label(label, "Book deleted")
        self.database.close(label)
        self.locks.discard(label)
        self.limiter.discard(label)
        book_dir = layout.book_dir(self.books_root, label)
        if remove_files and book_dir.exists():
            shutil.rmtree(book_dir)
        logger.info("Deleted book %s", label)

    def undelete_book(self, label: str) -> None:
        """Allow access to a deleted label again (used before reimport)."""
        self.database.undelete(label)

    # --- Pipeline ---

    def context(
        self,
        label: str,
        progress: ProgressCallback | None = None,
        force: Iterable[str] = (),
    ) -> PipelineContext:
        """Fresh pipeline context for a book (config is reloaded each time)."""
        return build_context(
            self.storage(label),
            self._settings,
            self.llm,
            progress=progress,
            force=force,
            locks=self.locks,
            limiter=self.limiter,
        )

    def enqueue(self, label: str, params: JobParams) -> str:
        return self.queue.enqueue(params, label)

    async def process_book(self, label: str) -> str:
        """Queue metadata (which fans out every page pipeline) and wait for the queue."""
        job_id = self.enqueue(label, MetadataJob())
        await self.queue.wait_idle()
        return job_id

    def shutdown(self) -> None:
        self.database.close_all()
        self.llm.clear()
        logger.debug("Book service shut down")
