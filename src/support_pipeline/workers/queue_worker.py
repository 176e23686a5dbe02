"""
Queue Worker: one batch of jobs per invocation.

Claims up to QUEUE_BATCH_SIZE due jobs and runs each through the
MessageProcessor, sequentially with a short delay between jobs to respect
the LLM provider's rate limits. Per job:

- success           -> Complete(result)
- busy conversation -> Release(delay), no attempt consumed
- other exception   -> classify_error -> Fail(retryable?) ; a dead-lettered
                       permanent failure also marks the Message failed
- rate limit        -> Fail(retryable) and stop the batch; claimed jobs not
                       yet started are released

Once the wall-clock budget is spent no new job is started; remaining
claimed jobs are released for the next run.
"""

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from support_pipeline.logging_config import pipeline_context
from support_pipeline.models.enums import JobStatus, JobType, MessageStatus
from support_pipeline.models.run_models import QueueRunResult
from support_pipeline.monitoring.metrics import job_processing_seconds, jobs_processed_total
from support_pipeline.persistence.job_queue import JobQueue, format_stack
from support_pipeline.persistence.message_store import MessageStore
from support_pipeline.persistence.tables import JobRow
from support_pipeline.retry.classification import classify_error
from support_pipeline.retry.exceptions import ConversationBusyError, PermanentProcessingError
from support_pipeline.workers.processor import MessageProcessor

logger = structlog.get_logger(__name__)


class QueueWorker:
    """
    Batch consumer of the job queue.

    Every job outcome is recorded on the queue before the next job starts,
    so an invocation that dies mid-batch leaves at most one job in
    `processing` for the janitor to recover.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: MessageStore,
        processor: MessageProcessor,
        batch_size: int = 15,
        time_budget_seconds: float = 110.0,
        delay_between_jobs: float = 2.0,
        busy_retry_delay_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.store = store
        self.processor = processor
        self.batch_size = batch_size
        self.time_budget_seconds = time_budget_seconds
        self.delay_between_jobs = delay_between_jobs
        self.busy_retry_delay_seconds = busy_retry_delay_seconds
        self._sleep = sleep

    async def run(self) -> QueueRunResult:
        start = time.monotonic()
        deadline = start + self.time_budget_seconds
        result = QueueRunResult()

        jobs = await self.queue.dequeue(self.batch_size, [JobType.PROCESS_EMAIL])
        result.jobs_claimed = len(jobs)
        if not jobs:
            logger.debug("No jobs due")
            return result

        for index, job in enumerate(jobs):
            if time.monotonic() >= deadline:
                result.stopped_reason = "time_budget"
                result.jobs_released += await self._release_all(jobs[index:])
                break

            if index > 0 and self.delay_between_jobs > 0:
                await self._sleep(self.delay_between_jobs)

            stop = await self._run_job(job, result)
            if stop:
                result.stopped_reason = "rate_limit"
                result.jobs_released += await self._release_all(jobs[index + 1:])
                break

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Queue run finished",
            claimed=result.jobs_claimed,
            processed=result.jobs_processed,
            completed=result.jobs_completed,
            retried=result.jobs_retried,
            dead_lettered=result.jobs_dead_lettered,
            released=result.jobs_released,
            stopped_reason=result.stopped_reason,
            duration_ms=result.duration_ms,
        )
        return result

    async def _run_job(self, job: JobRow, result: QueueRunResult) -> bool:
        """
        Process one job and record its outcome.

        Returns:
            True if the batch must stop (provider rate limit)
        """
        with pipeline_context(job_id=job.id, shop_id=job.shop_id, message_id=job.message_id):
            return await self._process_job(job, result)

    async def _process_job(self, job: JobRow, result: QueueRunResult) -> bool:
        log = logger.bind(attempt=job.attempt_count + 1)
        started = time.monotonic()
        result.jobs_processed += 1

        try:
            outcome = await self.processor.process(job.message_id)
        except ConversationBusyError:
            await self.queue.release(job.id, self.busy_retry_delay_seconds)
            result.jobs_released += 1
            jobs_processed_total.labels(status="released").inc()
            log.info("Conversation busy, job released")
            return False
        except Exception as e:
            return await self._record_failure(job, e, result, log)
        finally:
            job_processing_seconds.observe(time.monotonic() - started)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        await self.queue.complete(job.id, outcome.model_dump(mode="json"), elapsed_ms)
        result.jobs_completed += 1
        jobs_processed_total.labels(status="completed").inc()
        log.info("Job completed", outcome=outcome.outcome.value, processing_time_ms=elapsed_ms)
        return False

    async def _record_failure(
        self,
        job: JobRow,
        error: Exception,
        result: QueueRunResult,
        log: structlog.stdlib.BoundLogger,
    ) -> bool:
        classification = classify_error(error)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        new_status = await self.queue.fail(
            job.id,
            error_message=f"{type(error).__name__}: {message}",
            error_type=classification.error_type.value,
            is_retryable=classification.retryable,
            error_stack=format_stack(error),
        )

        if new_status == JobStatus.DEAD_LETTER:
            result.jobs_dead_lettered += 1
            jobs_processed_total.labels(status="dead_letter").inc()
            if not classification.retryable or isinstance(error, PermanentProcessingError):
                await self.store.set_message_status(
                    job.message_id,
                    MessageStatus.FAILED,
                    error_message=f"{classification.error_type.value}: {message}"[:2000],
                )
        else:
            result.jobs_retried += 1
            jobs_processed_total.labels(status="retried").inc()

        log.warning(
            "Job failed",
            error=message,
            error_type=classification.error_type.value,
            retryable=classification.retryable,
            new_status=new_status.value,
        )
        return classification.is_rate_limit

    async def _release_all(self, jobs: list[JobRow]) -> int:
        released = 0
        for job in jobs:
            if await self.queue.release(job.id):
                released += 1
        return released

