"""
Result summaries of the scheduled invocations.

Each periodic run returns one of these; Celery tasks serialize them with
model_dump(mode="json").
"""

from typing import Optional
from pydantic import BaseModel, Field


class ShopIngestionResult(BaseModel):
    shop_id: str
    shop_name: str
    emails_fetched: int = 0
    messages_created: int = 0
    duplicates_skipped: int = 0
    self_skipped: int = 0
    jobs_enqueued: int = 0
    errors: int = 0
    error_message: Optional[str] = None


class IngestionRunResult(BaseModel):
    shops_processed: int = 0
    shops_skipped: int = 0
    emails_fetched: int = 0
    jobs_enqueued: int = 0
    errors: int = 0
    budget_exhausted: bool = False
    duration_ms: int = 0
    shops: list[ShopIngestionResult] = Field(default_factory=list)


class QueueRunResult(BaseModel):
    jobs_claimed: int = 0
    jobs_processed: int = 0
    jobs_completed: int = 0
    jobs_retried: int = 0
    jobs_dead_lettered: int = 0
    jobs_released: int = 0
    stopped_reason: Optional[str] = None
    duration_ms: int = 0


class JanitorRunResult(BaseModel):
    stuck_messages_reset: int = 0
    stuck_jobs_reset: int = 0
    orphan_messages_fixed: int = 0
    transient_jobs_retried: int = 0
    old_dlq_cleaned: int = 0
    errors: list[str] = Field(default_factory=list)


class PendingCreditsRunResult(BaseModel):
    users_checked: int = 0
    messages_requeued: int = 0
    jobs_enqueued: int = 0
