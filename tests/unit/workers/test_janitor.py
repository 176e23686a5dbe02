"""
Unit tests for QueueJanitor sweeps.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from support_pipeline.models.enums import JobStatus, JobType, MessageStatus
from support_pipeline.persistence.tables import utc_now
from support_pipeline.workers.janitor import QueueJanitor


def janitor_at(store, queue, offset: timedelta = timedelta(0)) -> QueueJanitor:
    return QueueJanitor(store, queue, clock=lambda: utc_now() + offset)


async def _dead_letter(queue, message, error: str, retryable: bool) -> str:
    job_id = await queue.enqueue(JobType.PROCESS_EMAIL, shop_id=message.shop_id, message_id=message.id, max_attempts=1)
    await queue.dequeue(10)
    await queue.fail(job_id, error, "unknown_error", is_retryable=retryable)
    return job_id


@pytest.mark.asyncio
async def test_stuck_work_recovered(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    message = await make_inbound(shop)
    job_id = await queue.enqueue(JobType.PROCESS_EMAIL, shop_id=shop.id, message_id=message.id)
    await queue.dequeue(1)
    await store.claim_message(message.id)

    result = await janitor_at(store, queue, timedelta(minutes=11)).run()

    assert result.stuck_messages_reset == 1
    assert result.stuck_jobs_reset == 1
    assert result.orphan_messages_fixed == 0
    assert (await store.get_message(message.id)).status == MessageStatus.PENDING.value
    assert (await queue.get(job_id)).status == JobStatus.PENDING.value


@pytest.mark.asyncio
async def test_recent_work_left_alone(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    message = await make_inbound(shop)
    await queue.enqueue(JobType.PROCESS_EMAIL, shop_id=shop.id, message_id=message.id)
    await queue.dequeue(1)
    await store.claim_message(message.id)

    result = await janitor_at(store, queue).run()

    assert result.stuck_messages_reset == 0
    assert result.stuck_jobs_reset == 0
    assert (await store.get_message(message.id)).status == MessageStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_orphans_reenqueued(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    no_job = await make_inbound(shop, subject="Sem job")
    stale = await make_inbound(shop, subject="Job antigo")
    dead = await make_inbound(shop, subject="Job morto")
    stale_job = await queue.enqueue(JobType.PROCESS_EMAIL, shop_id=shop.id, message_id=stale.id)
    await queue.dequeue(10)
    await queue.complete(stale_job, {"outcome": "replied"}, 10)
    dead_job = await _dead_letter(queue, dead, "MailboxAuthError: bad password", retryable=False)

    result = await janitor_at(store, queue).run()

    assert result.orphan_messages_fixed == 3
    [fresh] = await queue.list_for_message(no_job.id)
    assert fresh.status == JobStatus.PENDING.value
    assert fresh.max_attempts == 3
    assert fresh.payload["source"] == "janitor"
    [replacement] = await queue.list_for_message(stale.id)
    assert replacement.id != stale_job
    assert replacement.status == JobStatus.PENDING.value
    assert await queue.get(dead_job) is None
    assert await queue.count_active(dead.id) == 1


@pytest.mark.asyncio
async def test_exhausted_non_transient_retry_reenqueued(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    message = await make_inbound(shop)
    dead_job = await _dead_letter(queue, message, "LLMServerError: server error 500", retryable=True)

    result = await janitor_at(store, queue).run()

    assert result.transient_jobs_retried == 0
    assert result.orphan_messages_fixed == 1
    assert await queue.get(dead_job) is None
    [job] = await queue.list_for_message(message.id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempt_count == 0
    assert (await store.get_message(message.id)).status == MessageStatus.PENDING.value


@pytest.mark.asyncio
async def test_transient_dead_letters_retried(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    message = await make_inbound(shop)
    job_id = await _dead_letter(queue, message, "LLMServerError: LLM provider error 529 overloaded", retryable=True)

    result = await janitor_at(store, queue).run()

    assert result.transient_jobs_retried == 1
    assert result.orphan_messages_fixed == 0
    job = await queue.get(job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempt_count == 0


@pytest.mark.asyncio
async def test_old_dead_letters_pruned(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    message = await make_inbound(shop)
    job_id = await _dead_letter(queue, message, "MailboxAuthError: bad password", retryable=False)
    await store.set_message_status(message.id, MessageStatus.FAILED, error_message="auth_error: bad password")

    recent = await janitor_at(store, queue, timedelta(days=6)).run()
    assert recent.old_dlq_cleaned == 0

    result = await janitor_at(store, queue, timedelta(days=8)).run()

    assert result.old_dlq_cleaned == 1
    assert result.orphan_messages_fixed == 0
    assert await queue.get(job_id) is None
    assert (await store.get_message(message.id)).status == MessageStatus.FAILED.value


@pytest.mark.asyncio
async def test_failing_sweep_does_not_stop_others(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    message = await make_inbound(shop)
    store.reset_stuck_messages = AsyncMock(side_effect=RuntimeError("boom"))

    result = await janitor_at(store, queue).run()

    assert result.errors == ["stuck: boom"]
    assert result.orphan_messages_fixed == 1
    assert await queue.has_active_job(message.id)


@pytest.mark.asyncio
async def test_janitor_is_idempotent(store, queue, make_shop, make_inbound):
    shop = await make_shop()
    await make_inbound(shop)
    janitor = janitor_at(store, queue)

    first = await janitor.run()
    second = await janitor.run()

    assert first.orphan_messages_fixed == 1
    assert second.orphan_messages_fixed == 0
