"""
Durable at-least-once job queue over the relational store.

Contract:
- enqueue: one active (pending/processing) job per message; a second
  enqueue raises DuplicateJobError. Backed by a partial unique index so
  concurrent enqueues cannot both win.
- dequeue: claims up to N due pending jobs ordered by priority (highest
  first) then age. Candidates are read with FOR UPDATE SKIP LOCKED and
  each claim is a conditional single-row update (status still pending),
  so two concurrent callers never claim the same job even on backends
  without row locking.
- complete: terminal.
- fail: attempt_count is incremented on every failure; a retryable failure
  with attempts left goes back to pending with exponential backoff, any
  other failure is dead-lettered. A job that always fails retryably is
  dead-lettered after exactly max_attempts failures.
- release: returns a claimed job to pending without consuming an attempt
  (conversation busy, batch stopped early).

Janitor support lives here too so every queue state change goes through
one module.
"""

import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

import structlog
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError

from support_pipeline.models.enums import JobStatus, JobType
from support_pipeline.monitoring.metrics import (
    dlq_entries_total,
    job_failures_total,
    jobs_enqueued_total,
)
from support_pipeline.persistence.database import Database
from support_pipeline.persistence.exceptions import DuplicateJobError, JobNotFoundError
from support_pipeline.persistence.tables import JobRow, MessageRow, utc_now
from support_pipeline.retry.backoff import BackoffPolicy
from support_pipeline.retry.classification import is_transient_error

logger = structlog.get_logger(__name__)

_ACTIVE = [status.value for status in JobStatus.active()]


class JobQueue:
    """
    Job queue operations.

    Every method opens its own short session; nothing is held across calls.
    """

    def __init__(
        self,
        database: Database,
        backoff: Optional[BackoffPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.database = database
        self.backoff = backoff or BackoffPolicy()
        self.clock = clock

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: JobType | str,
        shop_id: str,
        message_id: str,
        payload: Optional[dict[str, Any]] = None,
        priority: int = 0,
        max_attempts: int = 5,
    ) -> str:
        """
        Enqueue a job for a message.

        Returns:
            The new job id

        Raises:
            DuplicateJobError: The message already has an active job
        """
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type
        try:
            async with self.database.session() as session:
                existing = await session.scalar(
                    select(JobRow.id).where(
                        JobRow.message_id == message_id,
                        JobRow.status.in_(_ACTIVE),
                    )
                )
                if existing is not None:
                    raise DuplicateJobError(message_id)

                job = JobRow(
                    job_type=job_type_value,
                    shop_id=shop_id,
                    message_id=message_id,
                    payload=payload or {},
                    priority=priority,
                    max_attempts=max_attempts,
                    status=JobStatus.PENDING.value,
                    attempt_count=0,
                    next_retry_at=self.clock(),
                    created_at=self.clock(),
                )
                session.add(job)
                await session.flush()
                job_id = job.id
        except IntegrityError as exc:
            raise DuplicateJobError(message_id) from exc

        jobs_enqueued_total.labels(job_type=job_type_value).inc()
        logger.debug("Job enqueued", job_id=job_id, message_id=message_id, priority=priority)
        return job_id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def dequeue(
        self,
        batch_size: int,
        job_types: Optional[Iterable[JobType | str]] = None,
    ) -> list[JobRow]:
        """
        Atomically claim up to batch_size due pending jobs.

        Claimed jobs are returned detached, with status=processing and
        started_at set.
        """
        now = self.clock()
        type_values = [t.value if isinstance(t, JobType) else t for t in (job_types or [])]

        stmt = (
            select(JobRow)
            .where(
                JobRow.status == JobStatus.PENDING.value,
                JobRow.next_retry_at <= now,
            )
            .order_by(JobRow.priority.desc(), JobRow.created_at.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        if type_values:
            stmt = stmt.where(JobRow.job_type.in_(type_values))

        claimed: list[JobRow] = []
        async with self.database.session() as session:
            candidates = (await session.scalars(stmt)).all()
            for job in candidates:
                result = await session.execute(
                    update(JobRow)
                    .where(JobRow.id == job.id, JobRow.status == JobStatus.PENDING.value)
                    .values(status=JobStatus.PROCESSING.value, started_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    job.status = JobStatus.PROCESSING.value
                    job.started_at = now
                    claimed.append(job)
            session.expunge_all()

        if claimed:
            logger.info("Jobs claimed", count=len(claimed), batch_size=batch_size)
        return claimed

    async def complete(
        self,
        job_id: str,
        result: Optional[dict[str, Any]] = None,
        processing_time_ms: Optional[int] = None,
    ) -> None:
        now = self.clock()
        async with self.database.session() as session:
            outcome = await session.execute(
                update(JobRow)
                .where(JobRow.id == job_id)
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=result,
                    processing_time_ms=processing_time_ms,
                    completed_at=now,
                )
            )
            if outcome.rowcount == 0:
                raise JobNotFoundError(job_id)
        logger.debug("Job completed", job_id=job_id, processing_time_ms=processing_time_ms)

    async def fail(
        self,
        job_id: str,
        error_message: str,
        error_type: str,
        is_retryable: bool,
        error_stack: Optional[str] = None,
    ) -> JobStatus:
        """
        Record a failed attempt.

        Returns:
            JobStatus.PENDING if the job will be retried, else DEAD_LETTER
        """
        now = self.clock()
        async with self.database.session() as session:
            job = await session.scalar(
                select(JobRow).where(JobRow.id == job_id).with_for_update()
            )
            if job is None:
                raise JobNotFoundError(job_id)

            attempts = job.attempt_count + 1
            values: dict[str, Any] = {
                "attempt_count": attempts,
                "last_error": error_message[:4000],
                "error_type": error_type,
                "error_stack": error_stack,
                "started_at": None,
            }
            if is_retryable and attempts < job.max_attempts:
                new_status = JobStatus.PENDING
                values["next_retry_at"] = self.backoff.next_retry_at(attempts, now)
            else:
                new_status = JobStatus.DEAD_LETTER
                values["completed_at"] = now
            values["status"] = new_status.value

            await session.execute(update(JobRow).where(JobRow.id == job_id).values(**values))

        job_failures_total.labels(error_type=error_type, retryable=str(is_retryable).lower()).inc()
        if new_status == JobStatus.DEAD_LETTER:
            dlq_entries_total.labels(reason=error_type).inc()
            logger.error(
                "DLQ: job dead-lettered",
                job_id=job_id,
                attempts=attempts,
                error_type=error_type,
                retryable=is_retryable,
                error=error_message,
            )
        else:
            logger.warning(
                "Job scheduled for retry",
                job_id=job_id,
                attempts=attempts,
                next_retry_at=values["next_retry_at"].isoformat(),
                error_type=error_type,
            )
        return new_status

    async def release(self, job_id: str, delay_seconds: float = 0.0) -> bool:
        """Return a claimed job to pending without consuming an attempt."""
        now = self.clock()
        async with self.database.session() as session:
            result = await session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.status == JobStatus.PROCESSING.value)
                .values(
                    status=JobStatus.PENDING.value,
                    started_at=None,
                    next_retry_at=now + timedelta(seconds=delay_seconds),
                )
            )
        released = result.rowcount == 1
        logger.debug("Job released", job_id=job_id, released=released, delay_seconds=delay_seconds)
        return released

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> Optional[JobRow]:
        async with self.database.session() as session:
            return await session.get(JobRow, job_id)

    async def list_for_message(self, message_id: str) -> list[JobRow]:
        async with self.database.session() as session:
            rows = await session.scalars(
                select(JobRow).where(JobRow.message_id == message_id).order_by(JobRow.created_at)
            )
            return list(rows.all())

    async def count_active(self, message_id: str) -> int:
        async with self.database.session() as session:
            return await session.scalar(
                select(func.count())
                .select_from(JobRow)
                .where(JobRow.message_id == message_id, JobRow.status.in_(_ACTIVE))
            ) or 0

    async def has_active_job(self, message_id: str) -> bool:
        return await self.count_active(message_id) > 0

    # ------------------------------------------------------------------
    # Janitor support
    # ------------------------------------------------------------------

    async def reset_stuck_jobs(self, older_than: datetime) -> int:
        """Jobs claimed before `older_than` and never finished go back to pending."""
        async with self.database.session() as session:
            result = await session.execute(
                update(JobRow)
                .where(
                    JobRow.status == JobStatus.PROCESSING.value,
                    JobRow.started_at < older_than,
                )
                .values(status=JobStatus.PENDING.value, started_at=None, next_retry_at=self.clock())
            )
        return result.rowcount or 0

    async def delete_jobs_for_message(self, message_id: str) -> int:
        async with self.database.session() as session:
            result = await session.execute(delete(JobRow).where(JobRow.message_id == message_id))
        return result.rowcount or 0

    async def retry_transient_dead_letters(
        self,
        since: datetime,
        patterns: Iterable[str],
        message_status: str,
    ) -> int:
        """
        Reset recent dead-letters with a transient last error to pending.

        Only jobs whose message is still in `message_status` qualify, and a
        job is skipped if its message already has another active job.
        """
        patterns = list(patterns)
        now = self.clock()
        async with self.database.session() as session:
            candidates = (
                await session.execute(
                    select(JobRow.id, JobRow.message_id, JobRow.last_error)
                    .join(MessageRow, MessageRow.id == JobRow.message_id)
                    .where(
                        JobRow.status == JobStatus.DEAD_LETTER.value,
                        JobRow.completed_at >= since,
                        MessageRow.status == message_status,
                    )
                )
            ).all()

        retried = 0
        for job_id, message_id, last_error in candidates:
            if not is_transient_error(last_error, patterns):
                continue
            if await self.has_active_job(message_id):
                continue
            try:
                async with self.database.session() as session:
                    result = await session.execute(
                        update(JobRow)
                        .where(JobRow.id == job_id, JobRow.status == JobStatus.DEAD_LETTER.value)
                        .values(
                            status=JobStatus.PENDING.value,
                            attempt_count=0,
                            next_retry_at=now,
                            last_error=None,
                            error_type=None,
                            error_stack=None,
                            started_at=None,
                            completed_at=None,
                        )
                    )
            except IntegrityError:
                # Lost a race with an enqueue for the same message
                continue
            if result.rowcount == 1:
                retried += 1
                logger.info("Transient dead-letter retried", job_id=job_id, message_id=message_id)
        return retried

    async def prune_dead_letters(self, older_than: datetime) -> list[str]:
        """
        Delete dead-lettered jobs completed before `older_than`.

        Returns:
            Message ids whose dead-lettered jobs were deleted
        """
        condition = and_(
            JobRow.status == JobStatus.DEAD_LETTER.value,
            JobRow.completed_at < older_than,
        )
        async with self.database.session() as session:
            message_ids = list((await session.scalars(select(JobRow.message_id).where(condition))).all())
            if message_ids:
                await session.execute(delete(JobRow).where(condition))
        return message_ids


def format_stack(exc: BaseException) -> str:
    """Traceback text stored on failed jobs."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[-8000:]
