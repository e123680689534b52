"""SQLite adapter for local operation and tests.

Provides an async engine backed by ``aiosqlite`` that uses the same ORM
table definitions as the PostgreSQL backend.  Transactions are begun
explicitly so that SAVEPOINTs (``session.begin_nested()``) behave the same
way they do on PostgreSQL.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def get_local_engine(db_path: Path | str = ".billing/state.db") -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are created
        automatically.  Use ``:memory:`` for an ephemeral database shared
        by every session of the returned engine.
    """
    engine_kwargs: dict[str, Any] = {
        "echo": False,
        "connect_args": {"check_same_thread": False},
    }
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
        engine_kwargs["poolclass"] = StaticPool
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, **engine_kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: Any, _: object) -> None:
        # Hand transaction control to SQLAlchemy (see "begin" below).
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables; idempotent and safe on every startup."""
    from billing_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
