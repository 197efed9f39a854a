"""Job schedulers.

:class:`LocalScheduler` runs jobs on an in-process pool of asyncio workers;
:class:`CeleryScheduler` hands them to Celery workers that rebuild the
orchestrator and load the job from the shared repository.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from omniaudit.core.config import get_settings
from omniaudit.pipeline.jobs import JobPriority, ProgressEvent, QueueStats

logger = logging.getLogger(__name__)

Runner = Callable[[], Awaitable[Any]]
ProgressCallback = Callable[[ProgressEvent], None]


class CancelOutcome(str, enum.Enum):
    DEQUEUED = "dequeued"     # never started
    SIGNALLED = "signalled"   # running; cancellation requested
    NOT_FOUND = "not_found"


class Scheduler(ABC):
    """Where job runners execute. Also fans progress events out to subscribers."""

    #: Whether runners execute in this process (and may share live job records).
    runs_in_process: bool = True

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ProgressCallback]] = {}

    @abstractmethod
    async def submit(self, job_id: str, priority: JobPriority, runner: Runner) -> None: ...

    @abstractmethod
    async def cancel(self, job_id: str) -> CancelOutcome: ...

    def subscribe_progress(self, job_id: str, callback: ProgressCallback) -> None:
        self._subscribers.setdefault(job_id, []).append(callback)

    def publish_progress(self, event: ProgressEvent) -> None:
        for callback in self._subscribers.get(event.job_id, []):
            try:
                callback(event)
            except Exception as exc:
                logger.warning("Progress subscriber failed for job %s: %s", event.job_id, exc)
        if event.status.is_terminal:
            self._subscribers.pop(event.job_id, None)

    async def stats(self) -> QueueStats:
        """Jobs waiting for and holding a worker; zeros when the backend cannot tell."""
        return QueueStats()

    async def shutdown(self) -> None:
        """Release workers; no-op by default."""


# ── Local ────────────────────────────────────────────────────────────────────


class LocalScheduler(Scheduler):
    """Bounded asyncio worker pool over a priority queue.

    Entries are ordered by priority rank, then by submission order. A job
    cancelled while queued is dropped when a worker pops it.
    """

    def __init__(self, max_concurrent_jobs: int | None = None) -> None:
        super().__init__()
        self.max_concurrent_jobs = max_concurrent_jobs or get_settings().max_concurrent_jobs
        self._queue: asyncio.PriorityQueue[tuple[int, int, str]] | None = None
        self._sequence = itertools.count()
        self._runners: dict[str, Runner] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._workers: list[asyncio.Task] = []

    def _ensure_workers(self) -> asyncio.PriorityQueue[tuple[int, int, str]]:
        if self._queue is None:
            self._queue = asyncio.PriorityQueue()
            self._workers = [
                asyncio.create_task(self._worker(i), name=f"omniaudit-worker-{i}")
                for i in range(self.max_concurrent_jobs)
            ]
            logger.info("Started %d local job workers", self.max_concurrent_jobs)
        return self._queue

    async def submit(self, job_id: str, priority: JobPriority, runner: Runner) -> None:
        queue = self._ensure_workers()
        self._runners[job_id] = runner
        queue.put_nowait((priority.rank, next(self._sequence), job_id))
        logger.debug("Queued job %s (priority=%s, depth=%d)", job_id, priority.value, queue.qsize())

    async def cancel(self, job_id: str) -> CancelOutcome:
        if self._runners.pop(job_id, None) is not None:
            logger.info("Dequeued job %s", job_id)
            return CancelOutcome.DEQUEUED
        task = self._running.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            logger.info("Signalled running job %s", job_id)
            return CancelOutcome.SIGNALLED
        return CancelOutcome.NOT_FOUND

    def is_queued(self, job_id: str) -> bool:
        return job_id in self._runners

    def is_running(self, job_id: str) -> bool:
        return job_id in self._running

    async def stats(self) -> QueueStats:
        return QueueStats(waiting=len(self._runners), active=len(self._running))

    async def join(self) -> None:
        """Wait until every submitted job has left the queue and finished."""
        if self._queue is not None:
            await self._queue.join()

    async def shutdown(self) -> None:
        for task in list(self._running.values()):
            task.cancel()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, *self._running.values(), return_exceptions=True)
        self._workers = []
        self._running.clear()
        self._runners.clear()
        self._queue = None

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            _, _, job_id = await queue.get()
            try:
                runner = self._runners.pop(job_id, None)
                if runner is None:
                    continue
                task = asyncio.create_task(runner(), name=f"omniaudit-job-{job_id}")
                self._running[job_id] = task
                try:
                    await asyncio.wait({task})
                finally:
                    self._running.pop(job_id, None)
                if task.cancelled():
                    logger.info("Job %s cancelled while running (worker %d)", job_id, index)
                elif task.exception() is not None:
                    logger.error("Job %s crashed", job_id, exc_info=task.exception())
            finally:
                queue.task_done()


# ── Celery ───────────────────────────────────────────────────────────────────

# Redis transport: 0 is served first
_CELERY_PRIORITY: dict[JobPriority, int] = {
    JobPriority.CRITICAL: 0,
    JobPriority.HIGH: 3,
    JobPriority.NORMAL: 6,
    JobPriority.LOW: 9,
}


class CeleryScheduler(Scheduler):
    """Dispatches ``run_analysis_job`` by job id; the runner is not shipped."""

    runs_in_process = False

    def __init__(self, app: Any | None = None, inspect_timeout: float = 1.0) -> None:
        super().__init__()
        from omniaudit.pipeline import celery_app

        self._app = app or celery_app
        self.inspect_timeout = inspect_timeout

    async def submit(self, job_id: str, priority: JobPriority, runner: Runner) -> None:
        from omniaudit.pipeline.tasks import run_analysis_job

        await asyncio.to_thread(
            run_analysis_job.apply_async,
            args=[job_id],
            task_id=job_id,
            priority=_CELERY_PRIORITY[priority],
        )
        logger.info("Dispatched job %s to Celery (priority=%s)", job_id, priority.value)

    async def cancel(self, job_id: str) -> CancelOutcome:
        await asyncio.to_thread(self._app.control.revoke, job_id, terminate=True)
        logger.info("Revoked Celery task for job %s", job_id)
        return CancelOutcome.SIGNALLED

    async def stats(self) -> QueueStats:
        """Counts reported by live workers through ``control.inspect``.

        Tasks still sitting in the broker, not yet reserved by any worker,
        are not visible here.
        """
        inspector = self._app.control.inspect(timeout=self.inspect_timeout)
        active, reserved, scheduled = await asyncio.gather(
            asyncio.to_thread(inspector.active),
            asyncio.to_thread(inspector.reserved),
            asyncio.to_thread(inspector.scheduled),
        )
        return QueueStats(
            waiting=_task_count(reserved) + _task_count(scheduled),
            active=_task_count(active),
        )


def _task_count(replies: dict[str, list[Any]] | None) -> int:
    """Sum per-worker task lists; ``None`` means no worker answered."""
    return sum(len(tasks) for tasks in (replies or {}).values())
