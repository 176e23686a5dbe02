"""
Pending-credit recovery.

Messages parked in `pending_credits` go back to `pending` with a fresh,
high-priority job once their owner has quota again (plan upgrade, monthly
reset, extra package). Run on a schedule and callable directly from a
billing callback for one user.
"""

import structlog

from support_pipeline.models.enums import JobType
from support_pipeline.models.run_models import PendingCreditsRunResult
from support_pipeline.monitoring.metrics import janitor_actions_total
from support_pipeline.persistence.exceptions import DuplicateJobError
from support_pipeline.persistence.job_queue import JobQueue
from support_pipeline.persistence.message_store import MessageStore

logger = structlog.get_logger(__name__)

RECOVERY_PRIORITY = 5


class PendingCreditsRecovery:
    def __init__(
        self,
        store: MessageStore,
        queue: JobQueue,
        batch_size: int = 200,
        job_max_attempts: int = 5,
    ):
        self.store = store
        self.queue = queue
        self.batch_size = batch_size
        self.job_max_attempts = job_max_attempts

    async def run(self) -> PendingCreditsRunResult:
        result = PendingCreditsRunResult()
        users = await self.store.users_with_recoverable_credits()
        result.users_checked = len(users)
        for user in users:
            requeued, enqueued = await self._requeue(user.id)
            result.messages_requeued += requeued
            result.jobs_enqueued += enqueued
        janitor_actions_total.labels(sweep="credit_recovery").inc(result.messages_requeued)
        if result.messages_requeued:
            logger.info(
                "Pending-credit messages requeued",
                users=result.users_checked,
                messages=result.messages_requeued,
            )
        return result

    async def requeue_pending_credits(self, user_id: str) -> int:
        """Requeue one user's parked messages; returns how many were released."""
        requeued, _ = await self._requeue(user_id)
        return requeued

    async def _requeue(self, user_id: str) -> tuple[int, int]:
        messages = await self.store.pending_credit_messages(user_id, self.batch_size)
        requeued = enqueued = 0
        for message in messages:
            if not await self.store.release_pending_credit(message.id):
                continue
            requeued += 1
            try:
                await self.queue.enqueue(
                    JobType.PROCESS_EMAIL,
                    shop_id=message.shop_id,
                    message_id=message.id,
                    payload={"provider_message_id": message.message_id, "source": "credit_recovery"},
                    priority=RECOVERY_PRIORITY,
                    max_attempts=self.job_max_attempts,
                )
            except DuplicateJobError:
                logger.debug("Job already active for recovered message", message_id=message.id)
                continue
            enqueued += 1
        return requeued, enqueued
