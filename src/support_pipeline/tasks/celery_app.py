"""
Celery application configuration for the scheduled pipeline runs.

This module initializes the Celery app with Redis broker and result backend
and the beat schedule. Tasks are defined in pipeline_tasks.py.
"""

import structlog
from celery import Celery
from celery.signals import worker_process_init
from prometheus_client import start_http_server

from support_pipeline.config import settings
from support_pipeline.logging_config import configure_logging

logger = structlog.get_logger(__name__)

# Initialize Celery app
celery_app = Celery(
    "support_pipeline",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

# Configure Celery
celery_app.conf.update(
    # Task execution
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,  # Hard limit (kills task)
    task_soft_time_limit=settings.CELERY_TASK_TIME_LIMIT - 20,  # Soft limit (raises exception)

    # Worker settings
    worker_concurrency=settings.CELERY_WORKER_CONCURRENCY,
    worker_prefetch_multiplier=1,  # Fetch one task at a time (long batch runs)
    worker_max_tasks_per_child=100,  # Restart worker after N tasks (prevent memory leaks)

    # Serialization
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Result backend
    result_expires=3600,  # Results expire after 1 hour

    # Task tracking
    task_track_started=True,
    task_acks_late=False,  # A lost run is simply replaced by the next tick

    # Periodic runs; each task expires before the next tick so runs never pile up
    beat_schedule={
        "ingest-mailboxes": {
            "task": "ingest_mailboxes",
            "schedule": float(settings.INGESTION_INTERVAL_SECONDS),
            "options": {"expires": settings.INGESTION_INTERVAL_SECONDS},
        },
        "process-queue": {
            "task": "process_queue",
            "schedule": float(settings.QUEUE_INTERVAL_SECONDS),
            "options": {"expires": settings.QUEUE_INTERVAL_SECONDS},
        },
        "janitor": {
            "task": "run_janitor",
            "schedule": float(settings.JANITOR_INTERVAL_SECONDS),
            "options": {"expires": settings.JANITOR_INTERVAL_SECONDS},
        },
        "recover-pending-credits": {
            "task": "recover_pending_credits",
            "schedule": float(settings.PENDING_CREDITS_INTERVAL_SECONDS),
            "options": {"expires": settings.PENDING_CREDITS_INTERVAL_SECONDS},
        },
    },
)


@worker_process_init.connect
def init_worker_process(**kwargs) -> None:
    """Configure logging and expose metrics once per worker process."""
    configure_logging(settings.LOG_LEVEL, settings.ENVIRONMENT)
    if settings.PROMETHEUS_ENABLED:
        try:
            start_http_server(settings.METRICS_PORT)
        except OSError as e:
            # Another worker process already serves the port
            logger.debug("Metrics server not started", port=settings.METRICS_PORT, error=str(e))
        else:
            logger.info("Metrics server started", port=settings.METRICS_PORT)


# Auto-discover tasks from tasks module
celery_app.autodiscover_tasks(["support_pipeline.tasks"], related_name="pipeline_tasks")
