# src/pipeline/node.py — v2
"""Memoizing pipeline node engine.

A Node is a named unit of work over one item (a page id, or the book label
for book-level nodes) with an optional completion check against durable
storage. resolve_node() computes each ``(node name, item id)`` at most once
per PipelineContext: concurrent and late callers await the same task and
see the same value or exception. Dependencies are expressed by a node's
resolve function awaiting resolve_node() on upstream nodes; cycles are a
programming error and are not detected.

Across contexts (one per job), a shared KeyLocks serializes the
check-then-compute of each ``(book, node, item)``: the second job waits and
then finds the first job's stored value. Locks are always taken downstream
first, then upstream, so nested resolution cannot deadlock. A shared
StageLimiter caps concurrent LLM work per book and stage.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    TypeVar,
)

from bookweb.logging.context import bind_step
from bookweb.pipeline.events import ProgressEmitter, ProgressEvent

if TYPE_CHECKING:
    from bookweb.config.book_config import BookConfig
    from bookweb.config.settings import Settings
    from bookweb.llm.validated_caller import ValidatedCaller
    from bookweb.storage.book_storage import BookStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

MemoKey = tuple[str, str]
LockKey = tuple[str, str, str]


class KeyLocks:
    """Lazily created asyncio locks keyed by ``(label, node, item id)``."""

    def __init__(self) -> None:
        self._locks: dict[LockKey, asyncio.Lock] = {}

    def lock_for(self, label: str, node: str, item_id: str) -> asyncio.Lock:
        key = (label, node, item_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def discard(self, label: str) -> None:
        """Forget the locks of a book (after it is deleted)."""
        for key in [k for k in self._locks if k[0] == label]:
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class StageLimiter:
    """Per-book, per-stage semaphores sized from each stage's ``concurrency``.

    A stage without a configured limit runs unbounded. When a book's config
    changes the limit, the next caller gets a fresh semaphore of the new size.
    """

    def __init__(self) -> None:
        self._slots: dict[tuple[str, str], tuple[int, asyncio.Semaphore]] = {}

    def slot(self, label: str, stage: str, limit: int | None) -> AsyncContextManager[Any]:
        if limit is None:
            return contextlib.nullcontext()
        key = (label, stage)
        current = self._slots.get(key)
        if current is None or current[0] != limit:
            current = self._slots[key] = (limit, asyncio.Semaphore(limit))
        return current[1]

    def discard(self, label: str) -> None:
        for key in [k for k in self._slots if k[0] == label]:
            del self._slots[key]


class NoResultEmitted(Exception):
    """A node finished without producing a value."""

    def __init__(self, node: str, item_id: str):
        self.node = node
        self.item_id = item_id
        super().__init__(f"Node {node} completed without emitting a value for {item_id}")


@dataclass(frozen=True)
class Node(Generic[T]):
    """Declarative pipeline node.

    Attributes:
        name: Node name; also the memo key and the node-store vocabulary.
        resolve: Computes (and persists) the value for an item.
        is_complete: Returns the stored value when the item is already done,
            else None. Omitted means "always compute".
    """

    name: str
    resolve: Callable[[PipelineContext, str], Awaitable[T]]
    is_complete: Callable[[PipelineContext, str], Awaitable[T | None]] | None = None


@dataclass
class PipelineContext:
    """Per-invocation state threaded through every node.

    ``memo`` maps ``(node name, item id)`` to the in-flight or finished task.
    ``force`` names nodes whose completion check is skipped (explicit re-run).
    ``locks`` and ``limiter`` are shared by every context of a service and
    survive derive().
    """

    label: str
    config: BookConfig
    storage: BookStorage
    settings: Settings
    caller_factory: Callable[[str], ValidatedCaller]
    progress: ProgressEmitter = field(default_factory=ProgressEmitter)
    force: frozenset[str] = frozenset()
    memo: dict[MemoKey, asyncio.Task[Any]] = field(default_factory=dict)
    locks: KeyLocks = field(default_factory=KeyLocks, repr=False)
    limiter: StageLimiter = field(default_factory=StageLimiter, repr=False)
    _callers: dict[str, ValidatedCaller] = field(default_factory=dict, repr=False)

    def caller(self, stage: str) -> ValidatedCaller:
        """LLM caller configured for a config stage (e.g. "web_rendering")."""
        if stage not in self._callers:
            self._callers[stage] = self.caller_factory(stage)
        return self._callers[stage]

    def stage_slot(self, stage: str) -> AsyncContextManager[Any]:
        """Concurrency slot for one unit of a stage's work (``async with``)."""
        return self.limiter.slot(self.label, stage, self.config.stage(stage).concurrency)

    def lock_for(self, node: str, item_id: str) -> asyncio.Lock:
        return self.locks.lock_for(self.label, node, item_id)

    def emit(self, event: ProgressEvent) -> None:
        self.progress.emit(event)

    def derive(self, force: Iterable[str] = ()) -> PipelineContext:
        """Same wiring with an empty memo, forcing the named nodes."""
        return replace(self, force=frozenset(force), memo={})


async def resolve_node(node: Node[T], ctx: PipelineContext, item_id: str) -> T:
    """Return the node's value for ``item_id``, computing it at most once per context.

    Raises:
        NoResultEmitted: If the node's resolve function returned None.
        Exception: Whatever the node (or an upstream node) raised.
    """
    key: MemoKey = (node.name, item_id)
    task = ctx.memo.get(key)
    if task is None:
        task = asyncio.ensure_future(_run(node, ctx, item_id))
        ctx.memo[key] = task
    return await asyncio.shield(task)


async def _run(node: Node[T], ctx: PipelineContext, item_id: str) -> T:
    bind_step(node.name, page_id=item_id)

    async with ctx.lock_for(node.name, item_id):
        if node.is_complete is not None and node.name not in ctx.force:
            existing = await node.is_complete(ctx, item_id)
            if existing is not None:
                logger.debug("%s for %s already complete, skipping", node.name, item_id)
                return existing

        value = await node.resolve(ctx, item_id)
    if value is None:
        raise NoResultEmitted(node.name, item_id)
    return value


async def tracked_step(
    ctx: PipelineContext,
    step: str,
    work: Callable[[], Awaitable[T]],
    page_id: str | None = None,
    version_of: Callable[[T], int | None] | None = None,
) -> T:
    """Run ``work`` between start and complete/error progress events.

    Page steps (``page_id`` given) emit ``step-*`` events, book steps emit
    ``book-step-*``. The exception is re-raised after the error event.
    """
    prefix = "step" if page_id is not None else "book-step"

    def event(kind: str, **extra: Any) -> ProgressEvent:
        return ProgressEvent(type=f"{prefix}-{kind}", step=step, page_id=page_id, **extra)  # type: ignore[arg-type]

    ctx.emit(event("start"))
    try:
        value = await work()
    except Exception as e:
        logger.error("%s failed for %s: %s", step, page_id or ctx.label, e)
        ctx.emit(event("error", error=str(e)))
        raise
    version = version_of(value) if version_of is not None else None
    ctx.emit(event("complete", version=version))
    return value
