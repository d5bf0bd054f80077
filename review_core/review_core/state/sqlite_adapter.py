"""SQLite backend for local development and tests.

The same ORM tables and repositories run unchanged on SQLite.  What
differs from PostgreSQL: one shared connection for ``:memory:``, schema
created on startup rather than migrated, and JSONB stored as JSON text.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_DB = ".reviewpilot/state.db"

# Applied on every new DBAPI connection.  busy_timeout lets a second sync
# worker wait on the advisory-lock row instead of failing immediately.
_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(db_path: Path | str = DEFAULT_LOCAL_DB) -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*.

    ``":memory:"`` gives a single in-memory database shared through a
    ``StaticPool``; any other value is a file path whose parent
    directories are created.
    """
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
        kwargs["poolclass"] = StaticPool
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, **kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("SQLite engine ready: %s", url)
    return engine
