"""
Redis client with connection pooling.

Redis holds only ephemeral coordination state (conversation locks); the
relational store stays the source of truth. Each scheduled invocation runs
in its own event loop, so the pool is closed at the end of every run.
"""

from typing import Optional

import structlog
from redis.asyncio import ConnectionPool as AsyncConnectionPool
from redis.asyncio import Redis as AsyncRedis

from support_pipeline.config import Settings

logger = structlog.get_logger(__name__)


class RedisClient:
    """Async Redis client wrapper with a process-wide connection pool."""

    _async_pool: Optional[AsyncConnectionPool] = None

    @classmethod
    def get_async_client(cls, settings: Settings) -> AsyncRedis:
        """
        Get asynchronous Redis client with connection pooling.

        Args:
            settings: Application settings

        Returns:
            AsyncRedis client instance
        """
        if cls._async_pool is None:
            cls._async_pool = AsyncConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            logger.info("Initialized Redis async connection pool")

        return AsyncRedis(connection_pool=cls._async_pool)

    @classmethod
    async def close_async_pool(cls) -> None:
        """Close async connection pool (end of a scheduled run)."""
        if cls._async_pool is not None:
            await cls._async_pool.disconnect()
            cls._async_pool = None
            logger.info("Closed Redis async connection pool")
