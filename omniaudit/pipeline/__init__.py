"""Celery task queue configuration."""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from omniaudit.core.config import get_settings
from omniaudit.core.logging import setup_logging

settings = get_settings()

celery_app = Celery(
    "omniaudit",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["omniaudit.pipeline.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30 min hard limit
    task_soft_time_limit=1500,  # 25 min soft limit
    worker_prefetch_multiplier=1,  # Fair scheduling
    worker_max_tasks_per_child=50,  # Prevent memory leaks
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="analysis",
    result_expires=settings.job_ttl_seconds,
    broker_transport_options={"priority_steps": list(range(10)), "queue_order_strategy": "priority"},
    task_routes={
        "omniaudit.pipeline.tasks.run_analysis_job": {"queue": "analysis"},
        "omniaudit.pipeline.tasks.check_analyzer_health": {"queue": "analysis"},
    },
)


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    """Replace Celery's logging setup with the engine's formatters."""
    setup_logging(
        env=settings.app_env,
        log_level="DEBUG" if settings.debug else settings.log_level,
        service="omniaudit-worker",
    )
