"""
Queue Janitor: reconciles the job queue with the message store.

Four independent, idempotent sweeps; a failing sweep is logged and the
others still run:

1. Stuck recovery: `processing` messages older than the timeout go back to
   `pending`; `processing` jobs claimed before the timeout go back to
   `pending` too
2. Transient DLQ retry: recent dead-letters with a transient last error
   and a still-pending message are reset with attempts zeroed
3. Orphan reconciliation: inbound `pending` messages still without an
   active job get all their jobs deleted (dead-letters included) and a
   fresh job enqueued
4. DLQ pruning: old dead-letters are deleted
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from support_pipeline.models.enums import JobType, MessageStatus
from support_pipeline.models.run_models import JanitorRunResult
from support_pipeline.monitoring.metrics import janitor_actions_total
from support_pipeline.persistence.exceptions import DuplicateJobError
from support_pipeline.persistence.job_queue import JobQueue
from support_pipeline.persistence.message_store import MessageStore
from support_pipeline.persistence.tables import utc_now
from support_pipeline.retry.classification import DEFAULT_TRANSIENT_PATTERNS

logger = structlog.get_logger(__name__)


class QueueJanitor:
    """Periodic reconciliation sweeps."""

    def __init__(
        self,
        store: MessageStore,
        queue: JobQueue,
        stuck_timeout_minutes: int = 10,
        dlq_retry_window_hours: int = 24,
        dlq_retention_days: int = 7,
        orphan_max_attempts: int = 3,
        orphan_batch_size: int = 100,
        transient_patterns: Optional[Iterable[str]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.stuck_timeout = timedelta(minutes=stuck_timeout_minutes)
        self.dlq_retry_window = timedelta(hours=dlq_retry_window_hours)
        self.dlq_retention = timedelta(days=dlq_retention_days)
        self.orphan_max_attempts = orphan_max_attempts
        self.orphan_batch_size = orphan_batch_size
        self.transient_patterns = list(transient_patterns or DEFAULT_TRANSIENT_PATTERNS)
        self.clock = clock

    async def run(self) -> JanitorRunResult:
        result = JanitorRunResult()
        sweeps: list[tuple[str, Callable[[JanitorRunResult], Awaitable[None]]]] = [
            ("stuck", self.recover_stuck),
            ("transient_dlq", self.retry_transient_dead_letters),
            ("orphans", self.reconcile_orphans),
            ("dlq_pruned", self.prune_dead_letters),
        ]
        for name, sweep in sweeps:
            try:
                await sweep(result)
            except Exception as e:
                result.errors.append(f"{name}: {e}")
                logger.error("Janitor sweep failed", sweep=name, error=str(e), exc_info=True)

        logger.info("Janitor run finished", **result.model_dump(exclude={"errors"}), errors=len(result.errors))
        return result

    async def recover_stuck(self, result: JanitorRunResult) -> None:
        cutoff = self.clock() - self.stuck_timeout
        result.stuck_messages_reset = await self.store.reset_stuck_messages(cutoff)
        result.stuck_jobs_reset = await self.queue.reset_stuck_jobs(cutoff)
        janitor_actions_total.labels(sweep="stuck_messages").inc(result.stuck_messages_reset)
        janitor_actions_total.labels(sweep="stuck_jobs").inc(result.stuck_jobs_reset)
        if result.stuck_messages_reset or result.stuck_jobs_reset:
            logger.warning(
                "Recovered stuck work",
                messages=result.stuck_messages_reset,
                jobs=result.stuck_jobs_reset,
            )

    async def reconcile_orphans(self, result: JanitorRunResult) -> None:
        orphans = await self.store.find_orphan_messages(self.orphan_batch_size)
        for message in orphans:
            await self.queue.delete_jobs_for_message(message.id)
            try:
                await self.queue.enqueue(
                    JobType.PROCESS_EMAIL,
                    shop_id=message.shop_id,
                    message_id=message.id,
                    payload={"provider_message_id": message.message_id, "source": "janitor"},
                    max_attempts=self.orphan_max_attempts,
                )
            except DuplicateJobError:
                # Ingestion or another janitor enqueued it meanwhile
                continue
            result.orphan_messages_fixed += 1
            logger.info("Orphan message re-enqueued", message_id=message.id, shop_id=message.shop_id)

        janitor_actions_total.labels(sweep="orphans").inc(result.orphan_messages_fixed)

    async def retry_transient_dead_letters(self, result: JanitorRunResult) -> None:
        since = self.clock() - self.dlq_retry_window
        result.transient_jobs_retried = await self.queue.retry_transient_dead_letters(
            since,
            self.transient_patterns,
            MessageStatus.PENDING.value,
        )
        janitor_actions_total.labels(sweep="transient_dlq").inc(result.transient_jobs_retried)

    async def prune_dead_letters(self, result: JanitorRunResult) -> None:
        cutoff = self.clock() - self.dlq_retention
        pruned = await self.queue.prune_dead_letters(cutoff)
        result.old_dlq_cleaned = len(pruned)
        if pruned:
            logger.info("Pruned old dead-letters", jobs=len(pruned))
        janitor_actions_total.labels(sweep="dlq_pruned").inc(result.old_dlq_cleaned)
