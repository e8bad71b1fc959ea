"""
Async database session management — PostgreSQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    await init_db()                    # Call once at startup
    async with get_session() as db:    # Use in store methods
        result = await db.execute(...)
    await close_db()                   # Call at shutdown

Tests point the engine at a private in-memory SQLite database with
configure_engine("sqlite://") before init_db().
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": echo}

    if "sqlite" in db_url:
        kwargs = {**base, "connect_args": {"check_same_thread": False}}
        # An in-memory database lives only as long as its single connection
        if db_url.rstrip("/").endswith(("sqlite+aiosqlite:", ":memory:")):
            kwargs["poolclass"] = StaticPool
        return kwargs

    return {
        **base,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def configure_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """(Re)create the global engine for an explicit URL, or the configured one."""
    global _engine, _session_factory
    settings = get_settings()
    url = _to_async_url(db_url or settings.database.url)
    _engine = create_async_engine(url, **_engine_kwargs(url, echo=settings.debug))
    _session_factory = None
    logger.info("database_engine_created",
                 dialect=_engine.dialect.name,
                 url=str(_engine.url).split("@")[-1])
    return _engine


def get_engine() -> AsyncEngine:
    """Return the global engine, creating it if needed."""
    if _engine is None:
        return configure_engine()
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope."""
    factory = _get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create all tables. Call once at application startup."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose engine connections. Call at application shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
