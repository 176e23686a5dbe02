"""
Per-conversation advisory lock backed by Redis.

Key scheme:
- "support:lock:conversation:{conversation_id}" -> random owner token

Acquire is `SET key token NX PX ttl`; release is a compare-and-delete Lua
script so a worker whose lock already expired can never free a lock that
another worker has taken since. The TTL bounds how long a crashed worker
can block a conversation.
"""

import secrets
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
from typing import Optional

import structlog
from redis.asyncio import Redis as AsyncRedis

from support_pipeline.retry.exceptions import ConversationBusyError

logger = structlog.get_logger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisConversationLock:
    """
    Distributed mutual exclusion keyed by conversation id.

    Usage:
        async with lock.hold(conversation_id):
            ...  # raises ConversationBusyError if held elsewhere
    """

    KEY_PREFIX = "support:lock:conversation:"

    def __init__(self, redis_client: AsyncRedis, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl_ms = int(ttl_seconds * 1000)

    def _key(self, conversation_id: str) -> str:
        return f"{self.KEY_PREFIX}{conversation_id}"

    async def acquire(self, conversation_id: str) -> Optional[str]:
        """
        Try to take the lock.

        Returns:
            Owner token if acquired, None if another worker holds it
        """
        token = secrets.token_hex(16)
        acquired = await self.redis.set(self._key(conversation_id), token, nx=True, px=self.ttl_ms)
        if not acquired:
            logger.debug("Conversation lock busy", conversation_id=conversation_id)
            return None
        return token

    async def release(self, conversation_id: str, token: str) -> bool:
        """Release the lock if this token still owns it."""
        released = await self.redis.eval(_RELEASE_SCRIPT, 1, self._key(conversation_id), token)
        if not released:
            logger.warning("Conversation lock expired before release", conversation_id=conversation_id)
        return bool(released)

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncGenerator[str, None]:
        token = await self.acquire(conversation_id)
        if token is None:
            raise ConversationBusyError(conversation_id)
        try:
            yield token
        finally:
            await self.release(conversation_id, token)
