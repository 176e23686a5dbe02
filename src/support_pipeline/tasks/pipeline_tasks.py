"""
Celery tasks for the scheduled pipeline runs.

Each task enters the async core with asyncio.run, builds a fresh
PipelineContainer for the run and releases its loop-bound resources
(database engine, Redis pool, HTTP client) before returning. Tasks return
the run summary as a JSON-serializable dict.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog
from celery import Task
from pydantic import BaseModel

from support_pipeline.config import settings
from support_pipeline.logging_config import pipeline_context
from support_pipeline.models.run_models import PendingCreditsRunResult
from support_pipeline.tasks.celery_app import celery_app
from support_pipeline.tasks.dependencies import PipelineContainer

logger = structlog.get_logger(__name__)


class PipelineTask(Task):
    """
    Base task class with container construction.

    `container_factory` can be replaced (tests) to inject collaborators.
    """

    container_factory: Callable[[], PipelineContainer] = staticmethod(lambda: PipelineContainer(settings))

    def run_pipeline(self, run: Callable[[PipelineContainer], Awaitable[BaseModel]]) -> dict:
        start_time = time.time()

        async def _main() -> BaseModel:
            container = self.container_factory()
            try:
                return await run(container)
            finally:
                await container.aclose()

        # asyncio.run copies this context into the main task
        with pipeline_context(task=self.name, task_id=self.request.id):
            logger.info("Scheduled run started")
            try:
                result = asyncio.run(_main())
            except Exception as exc:
                logger.error(
                    "Scheduled run failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                    exc_info=True,
                )
                raise

            logger.info("Scheduled run completed", duration_ms=int((time.time() - start_time) * 1000))
        return result.model_dump(mode="json")


@celery_app.task(bind=True, base=PipelineTask, name="ingest_mailboxes")
def ingest_mailboxes_task(self: PipelineTask) -> dict:
    """Poll every active shop mailbox once."""
    return self.run_pipeline(lambda container: container.ingestion_worker().run())


@celery_app.task(bind=True, base=PipelineTask, name="process_queue")
def process_queue_task(self: PipelineTask) -> dict:
    """Process one batch of due jobs."""
    return self.run_pipeline(lambda container: container.queue_worker().run())


@celery_app.task(bind=True, base=PipelineTask, name="run_janitor")
def run_janitor_task(self: PipelineTask) -> dict:
    """Reconcile the job queue with the message store."""
    return self.run_pipeline(lambda container: container.janitor().run())


@celery_app.task(bind=True, base=PipelineTask, name="recover_pending_credits")
def recover_pending_credits_task(self: PipelineTask, user_id: Optional[str] = None) -> dict:
    """
    Requeue messages parked for credits.

    With `user_id` (billing callback) only that user's messages are
    requeued; otherwise every user with quota available is swept.
    """
    if user_id is None:
        return self.run_pipeline(lambda container: container.pending_credits().run())

    async def requeue_one(container: PipelineContainer) -> BaseModel:
        requeued = await container.pending_credits().requeue_pending_credits(user_id)
        return PendingCreditsRunResult(users_checked=1, messages_requeued=requeued)

    return self.run_pipeline(requeue_one)
