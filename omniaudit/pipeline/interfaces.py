"""Persistence and notification seams of the orchestrator.

The orchestrator only ever hands these snapshots of a job; implementations
are free to keep them as long as they like.

Usage:
    repository = RedisRepository()
    notifier = RedisNotifier()

    await repository.save(job)
    await notifier.push(job.owner_id, ProgressEvent.from_job(job))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis

from omniaudit.core.config import get_settings
from omniaudit.core.types import AnalysisResult
from omniaudit.pipeline.jobs import AnalysisJob, ProgressEvent

logger = logging.getLogger(__name__)


# ── Interfaces ───────────────────────────────────────────────────────────────


class Repository(ABC):
    """Stores job records."""

    @abstractmethod
    async def save(self, job: AnalysisJob) -> None: ...

    @abstractmethod
    async def load(self, job_id: str) -> AnalysisJob | None: ...

    @abstractmethod
    async def append_result(self, job_id: str, platform_id: str, result: AnalysisResult) -> None: ...


class Notifier(ABC):
    """Delivers progress events to job owners. Delivery is best effort."""

    @abstractmethod
    async def push(self, owner_id: str, event: ProgressEvent) -> None: ...


# ── In-memory ────────────────────────────────────────────────────────────────


class InMemoryRepository(Repository):
    """Process-local repository; stores deep copies."""

    def __init__(self) -> None:
        self._jobs: dict[str, AnalysisJob] = {}

    async def save(self, job: AnalysisJob) -> None:
        self._jobs[job.id] = job.snapshot()

    async def load(self, job_id: str) -> AnalysisJob | None:
        job = self._jobs.get(job_id)
        return job.snapshot() if job is not None else None

    async def append_result(self, job_id: str, platform_id: str, result: AnalysisResult) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("append_result for unknown job %s", job_id)
            return
        if job.is_terminal:
            logger.info("Job %s is %s; dropping %s result", job_id, job.status.value, platform_id)
            return
        job.results[platform_id] = result.model_copy(deep=True)


class InMemoryNotifier(Notifier):
    """Keeps every pushed event; handy for local runs and tests."""

    def __init__(self) -> None:
        self.events: list[tuple[str, ProgressEvent]] = []

    async def push(self, owner_id: str, event: ProgressEvent) -> None:
        self.events.append((owner_id, event))
        logger.debug(
            "Progress %s: %s %d%% (%s)",
            event.job_id, event.status.value, event.overall_percent, event.current_step,
        )


# ── Redis ────────────────────────────────────────────────────────────────────


class _RedisBacked:
    """Lazily connected ``redis.asyncio`` client shared by the Redis seams."""

    def __init__(self, url: str | None = None, client: Any | None = None) -> None:
        self._url = url or get_settings().redis_url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                decode_responses=True,
                socket_connect_timeout=2,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RedisRepository(_RedisBacked, Repository):
    """Job records as JSON under ``<prefix>:<job_id>``; shared by Celery workers."""

    def __init__(
        self,
        url: str | None = None,
        client: Any | None = None,
        prefix: str = "omniaudit:job",
        ttl: int | None = None,
    ) -> None:
        super().__init__(url, client)
        self._prefix = prefix
        self._ttl = ttl or get_settings().job_ttl_seconds

    def _key(self, job_id: str) -> str:
        return f"{self._prefix}:{job_id}"

    async def save(self, job: AnalysisJob) -> None:
        await self._get_client().set(self._key(job.id), job.model_dump_json(), ex=self._ttl)

    async def load(self, job_id: str) -> AnalysisJob | None:
        raw = await self._get_client().get(self._key(job_id))
        if raw is None:
            return None
        return AnalysisJob.model_validate_json(raw)

    async def append_result(self, job_id: str, platform_id: str, result: AnalysisResult) -> None:
        job = await self.load(job_id)
        if job is None:
            logger.warning("append_result for unknown job %s", job_id)
            return
        if job.is_terminal:
            logger.info("Job %s is %s; dropping %s result", job_id, job.status.value, platform_id)
            return
        job.results[platform_id] = result
        await self.save(job)


class RedisNotifier(_RedisBacked, Notifier):
    """Publishes progress events as JSON on ``<prefix>:<owner_id>``."""

    def __init__(
        self,
        url: str | None = None,
        client: Any | None = None,
        channel_prefix: str | None = None,
    ) -> None:
        super().__init__(url, client)
        self._prefix = channel_prefix or get_settings().progress_channel_prefix

    def channel(self, owner_id: str) -> str:
        return f"{self._prefix}:{owner_id}"

    async def push(self, owner_id: str, event: ProgressEvent) -> None:
        try:
            await self._get_client().publish(self.channel(owner_id), event.model_dump_json())
        except Exception as exc:
            logger.warning("Progress publish failed for job %s: %s", event.job_id, exc)
