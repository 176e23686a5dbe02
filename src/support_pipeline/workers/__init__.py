"""
Pipeline workers.

- ingestion.py: Mailbox polling into messages and jobs
- queue_worker.py: Job batch execution with retry classification
- processor.py: Per-message state machine
- janitor.py: Queue/message reconciliation sweeps
- pending_credits.py: Requeue of messages parked for credits
"""

from support_pipeline.workers.ingestion import IngestionWorker
from support_pipeline.workers.janitor import QueueJanitor
from support_pipeline.workers.pending_credits import PendingCreditsRecovery
from support_pipeline.workers.processor import MessageProcessor
from support_pipeline.workers.queue_worker import QueueWorker

__all__ = [
    "IngestionWorker",
    "QueueWorker",
    "MessageProcessor",
    "QueueJanitor",
    "PendingCreditsRecovery",
]
