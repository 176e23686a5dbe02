"""
Async database access for the relational store.

Uses SQLAlchemy's asyncio extension: asyncpg against PostgreSQL in
production, aiosqlite against a file database in tests. One Database
instance (engine + session factory) is created per worker process.

Sessions are short-lived: every store/queue operation opens one, issues
a few single-row statements and commits. No transaction is ever held
across a call to an external collaborator.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from support_pipeline.config import Settings
from support_pipeline.persistence.tables import Base

logger = structlog.get_logger(__name__)


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Referential integrity, WAL and a busy timeout for concurrent test writers."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.close()


class Database:
    """
    Engine and session factory wrapper.

    Responsibilities:
    - Create the async engine with pooling appropriate to the backend
    - Hand out transactional sessions (commit on success, rollback on error)
    - Create tables for tests and local development

    Does NOT handle:
    - Schema migrations (managed outside this package)
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 20,
        max_overflow: int = 10,
        echo: bool = False,
    ):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")

        engine_kwargs: dict[str, Any] = {"echo": echo}
        if not self.is_sqlite:
            engine_kwargs.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
            )

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        if self.is_sqlite:
            event.listen(self.engine.sync_engine, "connect", _set_sqlite_pragma)

        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )

        logger.info(
            "Initialized database engine",
            backend="sqlite" if self.is_sqlite else "postgresql",
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            echo=settings.DB_ECHO,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Transactional session scope.

        Usage:
            async with database.session() as session:
                await session.execute(...)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")


_database: Optional[Database] = None


def get_database(settings: Settings) -> Database:
    """Process-wide Database (one engine per worker process)."""
    global _database
    if _database is None:
        _database = Database.from_settings(settings)
    return _database
