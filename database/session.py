"""
Async database session management — PostgreSQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    engine = create_engine_for(settings.database.url)
    await init_db(engine)                   # create tables once at startup
    store = SqlStore(make_session_factory(engine))
    ...
    await engine.dispose()                  # the owner disposes at shutdown

There is no process-wide engine: whoever creates an engine owns it, so
tests can point stores at their own database.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from database.models import Base

logger = structlog.get_logger()


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


def _engine_kwargs(db_url: str, echo: bool) -> dict:
    if "sqlite" in db_url:
        return {"echo": echo}
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine for a (possibly sync-style) database URL."""
    async_url = _to_async_url(db_url)
    engine = create_async_engine(async_url, **_engine_kwargs(async_url, echo))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=async_url.split("@")[-1])
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, roll back and re-raise on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables. Call once at application startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))
