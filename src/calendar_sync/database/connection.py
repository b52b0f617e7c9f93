"""Async engine and session lifecycle.

One engine per process, created by `init_db()` at startup (app lifespan or
CLI command) and disposed by `close_db()`. Stores open short sessions through
`get_db()` and commit explicitly; an exception inside the block rolls back.

## Backends

| URL scheme | Pooling |
|---|---|
| `postgresql+asyncpg://` | pool sized by DATABASE_POOL_SIZE and DATABASE_MAX_OVERFLOW |
| `sqlite+aiosqlite:///path` | default |
| `sqlite+aiosqlite:///:memory:` | single static connection shared by every session |

`dialect_name()` lets the stores pick the matching upsert construct.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from calendar_sync.config import get_settings
from calendar_sync.database.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _require_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def _engine_options(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.database_echo}

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return options


async def init_db(database_url: str | None = None) -> None:
    """Create the engine and session factory.

    Args:
        database_url: Override for DATABASE_URL
    """
    global _engine, _session_factory

    url = database_url or get_settings().database_url
    _engine = create_async_engine(url, **_engine_options(url))
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)

    logger.info(f"Database engine ready ({_engine.dialect.name})")


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_factory = None


async def create_tables() -> None:
    """Create the credentials, watch_channels and calendar_events tables if missing."""
    async with _require_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def ping_db() -> bool:
    """True if a trivial query succeeds."""
    try:
        async with _require_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Database ping failed: {e}")
        return False
    return True


def dialect_name() -> str:
    """Name of the active SQL dialect ("postgresql", "sqlite", ...)."""
    return _require_engine().dialect.name


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Open a session. Nothing is committed implicitly."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    session = _session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
