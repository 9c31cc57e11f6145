# src/jobs/job_queue.py — v2
"""Bounded-concurrency in-process job queue.

Jobs are admitted FIFO and run as asyncio tasks, at most ``concurrency`` at
a time. Each job is dispatched to the executor registered for its kind.
A job's failure is recorded on the job and never stops the queue: every
completion frees its slot and re-drains immediately.

Lifecycle::

    queued --(drained, executor found)--> running --> completed | failed
    queued --(no executor)--> failed

Executors report through ``update(patch)``. A terminal ``status`` in a patch
is a request: the queue applies it when the executor returns, keeping the
returned value as the result. Only the queue moves a job to a terminal state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, get_args

from bookweb.jobs.models import (
    TERMINAL_STATUSES,
    Job,
    JobEvent,
    JobParams,
    JobStatus,
    QueueEvent,
    QueueStats,
    StatsEvent,
)
from bookweb.logging.context import bind_job

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 16
DEFAULT_RETENTION_S = 3600

UpdateFn = Callable[[dict[str, Any]], None]
Executor = Callable[[Job, UpdateFn], Awaitable[Any]]
Listener = Callable[[QueueEvent], None]

_PATCHABLE = frozenset({"progress", "result", "status", "error"})
_STATUSES: tuple[str, ...] = get_args(JobStatus)


class NoExecutor(Exception):
    """No executor is registered for a job's kind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f'No executor for job type "{kind}"')


def _check_status(value: Any) -> None:
    if value not in _STATUSES:
        raise ValueError(f"Unknown job status {value!r}; expected one of {', '.join(_STATUSES)}")
    if value == "queued":
        raise ValueError("A running job cannot be set back to queued")


class JobQueue:
    """FIFO job queue with a fixed worker budget.

    Args:
        concurrency: Maximum number of jobs running at once.
        retention_seconds: How long terminal jobs stay queryable.
        clock: Wall clock used for timestamps and pruning.
    """

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        retention_seconds: float = DEFAULT_RETENTION_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._concurrency = concurrency
        self._retention = retention_seconds
        self._clock = clock

        self._jobs: dict[str, Job] = {}
        self._pending: deque[str] = deque()
        self._running = 0
        self._next_id = 1
        self._executors: dict[str, Executor] = {}
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    # --- Registration and subscription ---

    def register_executor(self, kind: str, executor: Executor) -> None:
        """Bind (or replace) the executor for a job kind."""
        self._executors[kind] = executor

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Add a listener for job and stats events; returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- Queries ---

    def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job is not None else None

    def get_jobs(self, label: str | None = None) -> list[Job]:
        """All retained jobs in creation order, optionally for one book."""
        return [
            job.model_copy()
            for job in self._jobs.values()
            if label is None or job.label == label
        ]

    def get_active_jobs(self, label: str | None = None) -> list[Job]:
        return [job for job in self.get_jobs(label) if not job.is_terminal]

    def get_stats(self) -> QueueStats:
        return QueueStats(queued=len(self._pending), running=self._running)

    async def wait_idle(self) -> None:
        """Wait until nothing is queued or running (cascaded jobs included)."""
        await self._idle.wait()

    # --- Mutations ---

    def enqueue(self, params: JobParams, label: str) -> str:
        """Queue a job and return its id. Must be called from a running event loop."""
        job_id = f"job_{self._next_id}"
        self._next_id += 1
        job = Job(
            id=job_id,
            type=params.kind,
            label=label,
            params=params,
            created_at=self._clock(),
        )
        self._jobs[job_id] = job
        self._pending.append(job_id)
        self._idle.clear()
        logger.debug("Queued %s (%s) for %s", job_id, job.type, label)
        self._notify(job)
        self._drain()
        return job_id

    def fail_jobs_for_label(self, label: str, reason: str = "Book deleted") -> int:
        """Fail every queued or running job of a book. Returns how many were failed.

        Running executors keep going until they return; their later updates
        and outcome are ignored.
        """
        count = 0
        for job in self._jobs.values():
            if job.label != label or job.is_terminal:
                continue
            if job.status == "queued":
                self._pending.remove(job.id)
            self._finish(job, "failed", error=reason)
            count += 1
        if count:
            logger.info("Failed %d job(s) for %s: %s", count, label, reason)
            self._update_idle()
        return count

    def prune(self) -> int:
        """Drop terminal jobs older than the retention window."""
        cutoff = self._clock() - self._retention
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    # --- Internals ---

    def _drain(self) -> None:
        while self._running < self._concurrency and self._pending:
            job = self._jobs[self._pending.popleft()]
            executor = self._executors.get(job.type)
            if executor is None:
                error = NoExecutor(job.type)
                logger.error("%s: %s", job.id, error)
                self._finish(job, "failed", error=str(error))
                continue

            job.status = "running"
            job.started_at = self._clock()
            self._running += 1
            self._notify(job)

            task = asyncio.ensure_future(self._execute(job, executor))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._update_idle()

    async def _execute(self, job: Job, executor: Executor) -> None:
        bind_job(job.id, job.label)
        requested: list[str] = []

        def update(patch: dict[str, Any]) -> None:
            if job.is_terminal:
                return
            for key, value in patch.items():
                if key not in _PATCHABLE:
                    raise KeyError(f"Job field {key!r} cannot be updated by an executor")
                if key == "status":
                    _check_status(value)
                    if value in TERMINAL_STATUSES:
                        requested.append(value)
                    continue
                setattr(job, key, value)
            self._notify(job)

        try:
            result = await executor(job, update)
            if not job.is_terminal:
                if requested and requested[-1] == "failed":
                    self._finish(job, "failed", error=job.error or "Failed by executor")
                else:
                    self._finish(job, "completed", result=result)
        except Exception as e:
            logger.error("%s (%s) failed: %s", job.id, job.type, e)
            if not job.is_terminal:
                self._finish(job, "failed", error=str(e))
        finally:
            self._running -= 1
            self._notify_stats()
            self.prune()
            self._drain()

    def _finish(self, job: Job, status: str, result: Any = None, error: str | None = None) -> None:
        job.status = status  # type: ignore[assignment]
        job.completed_at = self._clock()
        if result is not None:
            job.result = result
        if error is not None:
            job.error = error
        self._notify(job)

    def _update_idle(self) -> None:
        if not self._pending and self._running == 0:
            self._idle.set()
        else:
            self._idle.clear()

    def _notify(self, job: Job) -> None:
        self._emit(JobEvent(job=job.model_copy()))
        self._notify_stats()

    def _notify_stats(self) -> None:
        self._emit(StatsEvent(stats=self.get_stats()))

    def _emit(self, event: QueueEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Queue listener raised, ignoring: %s", e)
