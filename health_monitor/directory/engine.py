"""
Account Directory - Async engine and session factory.

SQLite connections get foreign keys enabled so the
accounts -> subscribers -> thresholds cascade is enforced.
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from .models import Base


logger = logging.getLogger(__name__)


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _is_memory(database_url: str) -> bool:
    return _is_sqlite(database_url) and (":memory:" in database_url or database_url.rstrip("/").endswith(":"))


def create_directory_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for the directory.

    Args:
        database_url: SQLAlchemy async URL, e.g. sqlite+aiosqlite:///monitor.db
        echo: Log SQL statements

    Returns:
        AsyncEngine
    """
    kwargs: dict[str, Any] = {"echo": echo, "future": True}
    if _is_memory(database_url):
        # One shared connection, otherwise each checkout sees an empty database
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    elif not _is_sqlite(database_url):
        kwargs["pool_pre_ping"] = True

    engine = create_async_engine(database_url, **kwargs)
    logger.info(f"Creating directory engine for: {database_url.split('@')[-1]}")

    if _is_sqlite(database_url):
        @event.listens_for(engine.sync_engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create directory tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Directory tables ready")
