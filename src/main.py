# src/main.py — v4
"""CLI entry point.

Usage:
    bookweb extract <pdf> [--label L] [--start-page N] [--end-page N]
    bookweb reimport <label>
    bookweb metadata <label> [--force]
    bookweb pipeline <label> [--page ID ...] [--step NAME ...]
    bookweb process <label>
    bookweb rerun-section <label> <page_id> <section_index>
    bookweb log <label> [--output FILE]
    bookweb delete <label>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from bookweb.config.settings import Settings, load_settings
from bookweb.jobs.models import JobEvent, QueueEvent
from bookweb.logging.logger import configure_logging
from bookweb.pipeline.events import ProgressEvent
from bookweb.pipeline.schemas import PAGE_NODES
from bookweb.service import BookService
from bookweb.tracking.call_logger import save_jsonl
from bookweb.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        overrides = {"books_root": args.books_root} if args.books_root else {}
        settings = settings or load_settings(**overrides)
        configure_logging(settings, args.verbose)
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    service = BookService(settings)
    try:
        return await args.func(args, service)
    finally:
        service.shutdown()


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="bookweb",
        description=f"bookweb v{__version__} — PDF book to structured web pages",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--books-root", type=Path, default=None,
        help="Books directory (default: BOOKS_ROOT or ./books)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- extract ---
    p_extract = subparsers.add_parser("extract", help="Import a PDF as a book")
    p_extract.add_argument("pdf", type=Path, help="Path to the PDF")
    p_extract.add_argument("--label", default=None, help="Book label (default: from file name)")
    p_extract.add_argument("--start-page", type=int, default=None, help="First page (1-indexed)")
    p_extract.add_argument("--end-page", type=int, default=None, help="Last page (inclusive)")
    p_extract.set_defaults(func=_cmd_extract)

    # --- reimport ---
    p_reimport = subparsers.add_parser(
        "reimport", help="Re-extract a book from the pdf_path and page range in its config.yaml",
    )
    p_reimport.add_argument("label")
    p_reimport.set_defaults(func=_cmd_reimport)

    # --- metadata ---
    p_meta = subparsers.add_parser("metadata", help="Extract book metadata with the LLM")
    p_meta.add_argument("label")
    p_meta.add_argument("--force", action="store_true", help="Re-extract even if present")
    p_meta.set_defaults(func=_cmd_metadata)

    # --- pipeline ---
    p_pipe = subparsers.add_parser("pipeline", help="Run the page pipeline directly")
    p_pipe.add_argument("label")
    p_pipe.add_argument(
        "--page", dest="pages", action="append", default=None,
        help="Page id to process (repeatable; default: all pages)",
    )
    p_pipe.add_argument(
        "--step", dest="steps", action="append", default=None, choices=PAGE_NODES,
        help="Step to recompute (repeatable; default: resume all steps)",
    )
    p_pipe.set_defaults(func=_cmd_pipeline)

    # --- process ---
    p_process = subparsers.add_parser(
        "process", help="Queue metadata and every page pipeline, wait for completion",
    )
    p_process.add_argument("label")
    p_process.set_defaults(func=_cmd_process)

    # --- rerun-section ---
    p_rerun = subparsers.add_parser("rerun-section", help="Re-render one section")
    p_rerun.add_argument("label")
    p_rerun.add_argument("page_id")
    p_rerun.add_argument("section_index", type=int, help="0-based section index")
    p_rerun.set_defaults(func=_cmd_rerun_section)

    # --- log ---
    p_log = subparsers.add_parser("log", help="Show or export the LLM call log")
    p_log.add_argument("label")
    p_log.add_argument("-o", "--output", type=Path, default=None, help="Write JSONL here")
    p_log.set_defaults(func=_cmd_log)

    # --- delete ---
    p_delete = subparsers.add_parser("delete", help="Delete a book and its files")
    p_delete.add_argument("label")
    p_delete.set_defaults(func=_cmd_delete)

    return parser


def _print_progress(event: ProgressEvent) -> None:
    print(f"  {event.describe()}")


async def _cmd_extract(args: argparse.Namespace, service: BookService) -> int:
    pdf: Path = args.pdf
    if not pdf.exists():
        logger.error("File not found: %s", pdf)
        return 1

    label, result = await service.create_book(
        pdf,
        label=args.label,
        start_page=args.start_page,
        end_page=args.end_page,
        progress=_print_progress,
    )
    print("\nExtraction complete:")
    print(f"  Book:         {label}")
    print(f"  Pages:        {len(result.pages)} of {result.total_pages_in_pdf}")
    print(f"  Images:       {sum(len(p.images) for p in result.pages)}")
    return 0


async def _cmd_reimport(args: argparse.Namespace, service: BookService) -> int:
    result = await service.reimport_book(args.label, progress=_print_progress)
    print("\nReimport complete:")
    print(f"  Book:         {args.label}")
    print(f"  Pages:        {len(result.pages)} of {result.total_pages_in_pdf}")
    return 0


async def _cmd_metadata(args: argparse.Namespace, service: BookService) -> int:
    from bookweb.pipeline.book_runner import run_metadata

    ctx = service.context(args.label, progress=_print_progress)
    metadata = await run_metadata(ctx, force=args.force)
    print(f"\nMetadata for {args.label}:")
    print(f"  Title:        {metadata.title or '-'}")
    print(f"  Authors:      {', '.join(metadata.authors) or '-'}")
    print(f"  Publisher:    {metadata.publisher or '-'}")
    print(f"  Language:     {metadata.language_code or '-'}")
    return 0


async def _cmd_pipeline(args: argparse.Namespace, service: BookService) -> int:
    from bookweb.pipeline.page_runner import run_page_pipeline

    ctx = service.context(args.label, progress=_print_progress)
    page_ids = args.pages or await ctx.storage.list_page_ids()
    if not page_ids:
        logger.error("Book %s has no pages; run extract first", args.label)
        return 1

    # Pages are bounded here; each stage is further bounded by its configured concurrency.
    limit = asyncio.Semaphore(service.settings.queue_concurrency)

    async def one(page_id: str) -> None:
        async with limit:
            await run_page_pipeline(ctx, page_id, args.steps)

    results = await asyncio.gather(*(one(p) for p in page_ids), return_exceptions=True)
    failed = [(p, r) for p, r in zip(page_ids, results) if isinstance(r, Exception)]
    for page_id, error in failed:
        logger.error("Page %s failed: %s", page_id, error)

    print("\nPipeline complete:")
    print(f"  Pages:        {len(page_ids)}")
    print(f"  Failed:       {len(failed)}")
    return 1 if failed else 0


async def _cmd_process(args: argparse.Namespace, service: BookService) -> int:
    def on_event(event: QueueEvent) -> None:
        if isinstance(event, JobEvent) and event.job.status != "running":
            job = event.job
            target = getattr(job.params, "page_id", job.label)
            suffix = f": {job.error}" if job.error else ""
            print(f"  {job.id} {job.type} [{target}] {job.status}{suffix}")

    service.queue.subscribe(on_event)
    await service.process_book(args.label)

    jobs = service.queue.get_jobs(args.label)
    failed = [j for j in jobs if j.status == "failed"]
    print("\nProcessing complete:")
    print(f"  Jobs:         {len(jobs)}")
    print(f"  Failed:       {len(failed)}")
    return 1 if failed else 0


async def _cmd_rerun_section(args: argparse.Namespace, service: BookService) -> int:
    from bookweb.pipeline.page_runner import run_web_rendering_section

    ctx = service.context(args.label, progress=_print_progress)
    record = await run_web_rendering_section(ctx, args.page_id, args.section_index)
    print(f"\nSection {args.section_index} of {args.page_id} re-rendered (v{record.version})")
    return 0


async def _cmd_log(args: argparse.Namespace, service: BookService) -> int:
    entries = await service.storage(args.label).list_llm_log()
    if args.output:
        save_jsonl(entries, args.output)
        print(f"Wrote {len(entries)} log entries to {args.output}")
        return 0
    for entry in entries:
        print(json.dumps(entry, default=str))
    return 0


async def _cmd_delete(args: argparse.Namespace, service: BookService) -> int:
    if args.label not in service.list_books():
        logger.error("No such book: %s", args.label)
        return 1
    service.delete_book(args.label)
    print(f"Deleted {args.label}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
