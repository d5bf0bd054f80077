"""Engine construction and session helpers for the ReviewPilot store.

Production runs on PostgreSQL through asyncpg; local development and the
test-suite use SQLite through aiosqlite.  The URL scheme picks the backend.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from review_core.state.tables import Base

logger = logging.getLogger(__name__)

# Server-side guards applied to every PostgreSQL connection (milliseconds).
_PG_SERVER_SETTINGS = {
    "statement_timeout": "30000",
    "lock_timeout": "10000",
}


def _sqlite_path(database_url: str) -> str:
    """Return the file path of a ``sqlite+aiosqlite:///path`` URL, or ``:memory:``."""
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Build the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite://...``.
    pool_size, max_overflow:
        PostgreSQL pool sizing.  SQLite uses a single shared connection.
    """
    if database_url.startswith("sqlite"):
        from review_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


async def create_schema(engine: AsyncEngine) -> None:
    """Create any missing tables.  Used in dev and for SQLite; production migrates with Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Run one unit of work: commit on clean exit, roll back on error.

    The sync worker and the outbox consumer open one scope per phase so
    that a failure in one phase never undoes work already committed.
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
