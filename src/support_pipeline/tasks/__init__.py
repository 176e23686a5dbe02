"""
Celery tasks for the scheduled pipeline runs.

- celery_app.py: Celery application configuration (broker, backend, beat schedule)
- pipeline_tasks.py: Task definitions (ingestion, queue batch, janitor, credit recovery)
- dependencies.py: Component wiring from settings
"""

from support_pipeline.tasks.celery_app import celery_app
from support_pipeline.tasks.pipeline_tasks import (
    ingest_mailboxes_task,
    process_queue_task,
    recover_pending_credits_task,
    run_janitor_task,
)

__all__ = [
    "celery_app",
    "ingest_mailboxes_task",
    "process_queue_task",
    "run_janitor_task",
    "recover_pending_credits_task",
]
