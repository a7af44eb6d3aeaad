"""Async SQLite engine for the SQLModel tables."""

from __future__ import annotations

import platform
import sys
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from boardsync.paths import get_database_path

MEMORY = ":memory:"


def _check_greenlet() -> None:
    """SQLAlchemy's async bridge needs a working greenlet build."""
    try:
        import greenlet  # noqa: F401
    except (ImportError, OSError) as exc:
        py = f"Python {sys.version_info.major}.{sys.version_info.minor}"
        raise RuntimeError(
            f"greenlet is unusable on {platform.system()} ({py}); "
            f"async database access is unavailable: {exc}"
        ) from exc


def _url_for(db_path: str | Path) -> tuple[str, dict[str, Any]]:
    if str(db_path) == MEMORY:
        # One shared connection, or every session would see an empty database.
        return f"sqlite+aiosqlite:///{MEMORY}", {"poolclass": StaticPool}
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{path}", {}


async def create_db_engine(db_path: str | Path | None = None) -> AsyncEngine:
    """Create the engine. Every connection enforces foreign keys; files use WAL."""
    _check_greenlet()
    target = db_path or get_database_path()
    url, pool_options = _url_for(target)
    engine = create_async_engine(
        url, echo=False, connect_args={"check_same_thread": False}, **pool_options
    )
    in_memory = str(target) == MEMORY

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


async def create_db_tables(engine: AsyncEngine) -> None:
    """Create missing tables; existing ones are left untouched."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
