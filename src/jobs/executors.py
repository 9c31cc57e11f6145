# src/jobs/executors.py — v1
"""Executor table: one async handler per job kind.

Handlers receive the owning BookService, the job and the queue's update
callback. The table must cover every kind in ``JOB_KINDS``.
"""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from bookweb.jobs.job_queue import JobQueue, UpdateFn
from bookweb.jobs.models import (
    JOB_KINDS,
    Job,
    ImageClassificationJob,
    PagePipelineJob,
    PageSectioningJob,
    TextClassificationJob,
    WebEditJob,
    WebRenderingJob,
    WebRenderingSectionJob,
)
from bookweb.pipeline import book_runner, page_runner
from bookweb.pipeline.events import ProgressEvent
from bookweb.pipeline.node import PipelineContext
from bookweb.pipeline.steps.web_rendering import RenderedSection
from bookweb.storage.node_store import VersionedRecord

if TYPE_CHECKING:
    from bookweb.service import BookService

logger = logging.getLogger(__name__)

Handler = Callable[["BookService", Job, UpdateFn], Awaitable[Any]]
P = TypeVar("P")


def _params(job: Job, kind: type[P]) -> P:
    if not isinstance(job.params, kind):
        raise TypeError(
            f"{job.id}: expected {kind.__name__} params, got {type(job.params).__name__}"
        )
    return job.params


def _context(service: BookService, job: Job, update: UpdateFn) -> PipelineContext:
    def on_progress(event: ProgressEvent) -> None:
        update({"progress": event.describe()})

    return service.context(job.label, progress=on_progress)


def _sections(outcomes: list[RenderedSection] | None) -> dict[str, Any]:
    return {
        "sections": [
            {"section_id": o.section_id, "version": o.version, "rendered": o.rendering is not None}
            for o in outcomes or []
        ]
    }


def _version(record: VersionedRecord) -> dict[str, Any]:
    return {"version": record.version}


async def run_metadata_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    """Extract metadata, then queue one page-pipeline job per page."""
    ctx = _context(service, job, update)
    metadata = await book_runner.run_metadata(ctx)
    page_ids = await ctx.storage.list_page_ids()
    for page_id in page_ids:
        service.queue.enqueue(PagePipelineJob(page_id=page_id), job.label)
    logger.info("Metadata for %s done, queued %d page pipelines", job.label, len(page_ids))
    return {"metadata": metadata.model_dump(), "pages_queued": len(page_ids)}


async def run_page_pipeline_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    params = _params(job, PagePipelineJob)
    outcomes = await page_runner.run_page_pipeline(_context(service, job, update), params.page_id)
    return _sections(outcomes)


async def run_image_classification_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    params = _params(job, ImageClassificationJob)
    ctx = _context(service, job, update)
    return _version(await page_runner.run_image_classification(ctx, params.page_id))


async def run_text_classification_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    params = _params(job, TextClassificationJob)
    ctx = _context(service, job, update)
    return _version(await page_runner.run_text_classification(ctx, params.page_id))


async def run_page_sectioning_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    params = _params(job, PageSectioningJob)
    ctx = _context(service, job, update)
    return _version(await page_runner.run_page_sectioning(ctx, params.page_id))


async def run_web_rendering_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    params = _params(job, WebRenderingJob)
    ctx = _context(service, job, update)
    return _sections(await page_runner.run_web_rendering(ctx, params.page_id))


async def run_web_rendering_section_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    params = _params(job, WebRenderingSectionJob)
    ctx = _context(service, job, update)
    record = await page_runner.run_web_rendering_section(
        ctx, params.page_id, params.section_index
    )
    return _version(record)


async def run_web_edit_job(service: BookService, job: Job, update: UpdateFn) -> Any:
    params = _params(job, WebEditJob)
    record = await page_runner.run_web_edit(
        _context(service, job, update),
        params.page_id,
        params.section_index,
        params.annotation_image_base64,
        params.annotations,
        params.current_html,
    )
    return {**_version(record), "html": record.data.html}


EXECUTOR_TABLE: dict[str, Handler] = {
    "metadata": run_metadata_job,
    "page-pipeline": run_page_pipeline_job,
    "image-classification": run_image_classification_job,
    "text-classification": run_text_classification_job,
    "page-sectioning": run_page_sectioning_job,
    "web-rendering": run_web_rendering_job,
    "web-rendering-section": run_web_rendering_section_job,
    "web-edit": run_web_edit_job,
}


def register_executors(
    queue: JobQueue, service: BookService, table: dict[str, Handler] | None = None
) -> None:
    """Bind every handler of ``table`` to ``queue``.

    Raises:
        ValueError: If the table leaves a job kind without a handler.
    """
    table = EXECUTOR_TABLE if table is None else table
    missing = [kind for kind in JOB_KINDS if kind not in table]
    if missing:
        raise ValueError(f"Executor table has no handler for: {', '.join(missing)}")
    for kind, handler in table.items():
        queue.register_executor(kind, functools.partial(handler, service))
