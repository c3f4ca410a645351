"""
Engine and session-factory lifecycle for the stores.

Every store opens its own short session from the factory returned by
``get_session_factory``; nothing here hands sessions to request handlers.
PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for development and
tests. The schema is owned by this service and created with ``create_all``.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from karaoke.config import settings

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_URL = "sqlite+aiosqlite:///./karaoke.db"


class Base(DeclarativeBase):
    """Declarative base for every karaoke table."""


_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def resolve_database_url(url: Optional[str] = None) -> str:
    resolved = url or settings.database_url
    if not resolved:
        logger.warning(f"No database URL configured, using SQLite: {DEFAULT_SQLITE_URL}")
        resolved = DEFAULT_SQLITE_URL
    return resolved


def create_engine_for(url: str, *, echo: bool = False) -> AsyncEngine:
    """Build an async engine; in-memory SQLite shares one connection."""
    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
    return create_async_engine(url, **kwargs)


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create missing tables. Existing tables are left untouched."""
    from karaoke.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    """Open the process-wide engine, create the schema and return the session factory."""
    global _engine, _async_session_factory

    database_url = resolve_database_url(url)
    logger.info(f"Initializing database: {database_url.split('@')[-1]}")

    _engine = create_engine_for(database_url, echo=settings.debug)
    _async_session_factory = session_factory_for(_engine)
    await create_schema(_engine)

    logger.info("Database initialized")
    return _async_session_factory


async def close_db() -> None:
    global _engine, _async_session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the live session factory (for stores that open their own sessions)."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_factory
