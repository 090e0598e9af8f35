"""
Async engine and session lifecycle for the relay tables.

URLs in settings are written in their sync form; the async driver is
substituted when the engine is created:
  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://

SQLite connections turn on foreign keys so deleting a routing target
cascades to its webhook jobs the same way it does on PostgreSQL.

Usage:
    await init_db()                      # create_all, once at startup
    async with get_session() as db:      # one transaction per store call
        await db.execute(...)
    await close_db()                     # at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def to_async_url(db_url: str) -> URL:
    """Swap a bare dialect for its async driver; explicit drivers are kept."""
    url = make_url(db_url)
    driver = _ASYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=driver) if driver else url


def _engine_kwargs(url: URL, echo: bool) -> dict:
    if url.get_backend_name() == "sqlite":
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Return the process-wide engine, creating it from db_url or settings on first use."""
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = to_async_url(db_url or settings.database.url)
    _engine = create_async_engine(url, **_engine_kwargs(url, settings.debug))
    if url.get_backend_name() == "sqlite":
        event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                url=url.render_as_string(hide_password=True))
    return _engine


def _session_factory() -> async_sessionmaker[AsyncSession]:
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _sessions


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Commit on clean exit, roll back and re-raise otherwise."""
    async with _session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create any missing tables. There are no migrations beyond this."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
