"""Celery tasks: run analysis jobs on workers."""

from __future__ import annotations

import asyncio
import logging
import traceback

from omniaudit.pipeline import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Helper to run async code in sync Celery tasks."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _worker_orchestrator():
    """Orchestrator that executes in this worker and shares job records through Redis."""
    from omniaudit.core.config import get_settings
    from omniaudit.pipeline.interfaces import RedisNotifier, RedisRepository
    from omniaudit.pipeline.orchestrator import build_default_orchestrator
    from omniaudit.pipeline.scheduler import LocalScheduler

    settings = get_settings()
    return build_default_orchestrator(
        settings,
        scheduler=LocalScheduler(1),
        repository=RedisRepository(settings.redis_url),
        notifier=RedisNotifier(settings.redis_url),
    )


@celery_app.task(bind=True, name="omniaudit.pipeline.tasks.run_analysis_job")
def run_analysis_job(self, job_id: str) -> dict:
    """Execute a queued analysis job.

    Progress is mirrored into the task state so ``AsyncResult.info`` tracks it.
    """
    self.update_state(state="STARTED", meta={"job_id": job_id, "step": "initializing"})

    def on_progress(event) -> None:
        self.update_state(state="PROGRESS", meta=event.model_dump(mode="json"))

    try:
        orchestrator = _worker_orchestrator()
        orchestrator.scheduler.subscribe_progress(job_id, on_progress)
        job = _run_async(orchestrator.execute(job_id))
        return {
            "job_id": job.id,
            "status": job.status.value,
            "completed_platforms": job.completed_platforms,
            "failed_platforms": job.failed_platforms,
        }
    except Exception as e:
        logger.error("Analysis job %s failed: %s", job_id, e)
        self.update_state(state="FAILURE", meta={"error": str(e), "traceback": traceback.format_exc()})
        raise


@celery_app.task(bind=True, name="omniaudit.pipeline.tasks.check_analyzer_health")
def check_analyzer_health(self) -> dict:
    """Report which platform toolchains are installed on this worker."""
    from omniaudit.analyzer.dispatch import AnalyzerDispatch
    from omniaudit.platforms.catalog import default_registry

    dispatch = AnalyzerDispatch(default_registry())
    health = _run_async(dispatch.check_all_health())
    return {pid: result.model_dump() for pid, result in health.items()}
