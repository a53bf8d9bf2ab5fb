"""Celery application configuration."""

from celery import Celery
from celery.signals import worker_process_init

from marketsync.config import settings
from marketsync.logging_config import configure_logging

# Create Celery app
celery_app = Celery(
    "marketsync_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.job_timeout_seconds,
    task_soft_time_limit=settings.job_timeout_seconds - 60,
    worker_prefetch_multiplier=1,  # Report syncs are long; take one at a time
    worker_max_tasks_per_child=100,
)


@worker_process_init.connect
def _init_worker_process(**kwargs):
    configure_logging()


# Auto-discover tasks
celery_app.autodiscover_tasks(["marketsync.worker"])
