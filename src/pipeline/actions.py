# src/pipeline/actions.py — v2
"""Wiring of one pipeline invocation: config, storage, cache, models, log."""

from __future__ import annotations

import logging
from typing import Iterable

from bookweb.cache.content_cache import ContentCache
from bookweb.config.book_config import BookConfig, load_book_config
from bookweb.config.settings import Settings
from bookweb.llm.validated_caller import ValidatedCaller
from bookweb.pipeline.events import ProgressCallback, ProgressEmitter
from bookweb.pipeline.llm_factory import LLMFactory
from bookweb.pipeline.node import KeyLocks, PipelineContext, StageLimiter
from bookweb.storage import layout
from bookweb.storage.book_storage import BookStorage
from bookweb.tracking.call_logger import CallLogger

logger = logging.getLogger(__name__)


def build_context(
    storage: BookStorage,
    settings: Settings,
    llm_factory: LLMFactory,
    config: BookConfig | None = None,
    progress: ProgressCallback | None = None,
    force: Iterable[str] = (),
    locks: KeyLocks | None = None,
    limiter: StageLimiter | None = None,
) -> PipelineContext:
    """Create a fresh PipelineContext (empty memo) for one book.

    All callers of the context share one content cache rooted in the book's
    ``.cache`` directory and one call logger persisting to the book's log.
    Pass the service-wide ``locks`` and ``limiter`` so that concurrent
    contexts of the same book coordinate; omitted, the context gets its own.
    The cache refuses writes once the book is deleted.
    """
    label = storage.label
    config = config or load_book_config(label, settings)
    cache = ContentCache(
        layout.cache_dir(settings.books_root_path, label),
        force_recompute=settings.recache,
        guard=storage.ensure_active,
    )
    call_logger = CallLogger(sink=storage, max_entries=settings.llm_log_max_entries)

    def caller_for(stage: str) -> ValidatedCaller:
        return ValidatedCaller(
            llm_factory.get_client(stage, config),
            cache,
            call_logger,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
        )

    if settings.recache:
        logger.info("RECACHE set: cached LLM responses for %s will be ignored", label)

    return PipelineContext(
        label=label,
        config=config,
        storage=storage,
        settings=settings,
        caller_factory=caller_for,
        progress=ProgressEmitter(progress),
        force=frozenset(force),
        locks=locks if locks is not None else KeyLocks(),
        limiter=limiter if limiter is not None else StageLimiter(),
    )
