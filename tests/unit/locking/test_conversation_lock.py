"""Unit tests for RedisConversationLock."""

import pytest

from support_pipeline.locking.conversation_lock import RedisConversationLock
from support_pipeline.retry.exceptions import ConversationBusyError


@pytest.mark.asyncio
async def test_acquire_sets_key_with_nx_and_ttl(mock_async_redis):
    lock = RedisConversationLock(mock_async_redis, ttl_seconds=120)

    token = await lock.acquire("conv-1")

    assert token
    mock_async_redis.set.assert_awaited_once_with(
        "support:lock:conversation:conv-1", token, nx=True, px=120000
    )


@pytest.mark.asyncio
async def test_tokens_are_unique(mock_async_redis):
    lock = RedisConversationLock(mock_async_redis)

    assert await lock.acquire("conv-1") != await lock.acquire("conv-1")


@pytest.mark.asyncio
async def test_acquire_returns_none_when_held(mock_async_redis):
    mock_async_redis.set.return_value = None
    lock = RedisConversationLock(mock_async_redis)

    assert await lock.acquire("conv-1") is None


@pytest.mark.asyncio
async def test_release_compares_token(mock_async_redis):
    lock = RedisConversationLock(mock_async_redis)

    assert await lock.release("conv-1", "token-a") is True

    args = mock_async_redis.eval.await_args.args
    assert args[1:] == (1, "support:lock:conversation:conv-1", "token-a")
    assert 'redis.call("del", KEYS[1])' in args[0]


@pytest.mark.asyncio
async def test_release_after_expiry_reports_false(mock_async_redis):
    mock_async_redis.eval.return_value = 0
    lock = RedisConversationLock(mock_async_redis)

    assert await lock.release("conv-1", "stale-token") is False


@pytest.mark.asyncio
async def test_hold_releases_on_exit(mock_async_redis):
    lock = RedisConversationLock(mock_async_redis)

    async with lock.hold("conv-1") as token:
        mock_async_redis.eval.assert_not_awaited()

    assert mock_async_redis.eval.await_args.args[3] == token


@pytest.mark.asyncio
async def test_hold_releases_on_error(mock_async_redis):
    lock = RedisConversationLock(mock_async_redis)

    with pytest.raises(RuntimeError):
        async with lock.hold("conv-1"):
            raise RuntimeError("boom")

    mock_async_redis.eval.assert_awaited_once()


@pytest.mark.asyncio
async def test_hold_raises_busy_without_release(mock_async_redis):
    mock_async_redis.set.return_value = None
    lock = RedisConversationLock(mock_async_redis)

    with pytest.raises(ConversationBusyError):
        async with lock.hold("conv-1"):
            pytest.fail("body must not run while the lock is held elsewhere")

    mock_async_redis.eval.assert_not_awaited()
