"""
Relational persistence layer and Redis pool.

- tables.py: SQLAlchemy ORM tables (users, shops, conversations, messages,
  job_queue, processing_events)
- database.py: async engine and transactional session scope
- message_store.py: conversation/message persistence and status transitions
- job_queue.py: durable job queue with retry/backoff/dead-letter
- redis_client.py: Redis connection pooling (conversation locks)

Storage Strategy:
- PostgreSQL via asyncpg in production, SQLite via aiosqlite in tests
- Job claiming with SELECT ... FOR UPDATE SKIP LOCKED
- One active job per message, backed by a partial unique index
"""

from support_pipeline.persistence.database import Database, get_database
from support_pipeline.persistence.exceptions import DuplicateJobError, JobNotFoundError, StoreError
from support_pipeline.persistence.job_queue import JobQueue
from support_pipeline.persistence.message_store import MessageStore, shop_policy
from support_pipeline.persistence.redis_client import RedisClient

__all__ = [
    "Database",
    "get_database",
    "StoreError",
    "DuplicateJobError",
    "JobNotFoundError",
    "JobQueue",
    "MessageStore",
    "shop_policy",
    "RedisClient",
]
