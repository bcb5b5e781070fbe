"""
Database access for the sync engine.

Repositories and stores run their `text()` statements through
`get_db_session()`; the job queue claims rows through the raw asyncpg pool
from `get_db_pool()`. Both are created lazily, once per process.
"""

import json
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg
import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from reviewsync.config import get_settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_pool: asyncpg.Pool | None = None


def _session_url() -> str:
    url = str(get_settings().database_url)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _pool_url() -> str:
    return str(get_settings().database_url).replace("postgresql+asyncpg://", "postgresql://", 1)


def _engine_options() -> dict[str, object]:
    settings = get_settings()
    options: dict[str, object] = {"echo": settings.log_level == "DEBUG"}
    if settings.db_pool_mode == "null":
        options["poolclass"] = NullPool
        return options
    options.update(
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_pool_max_overflow)),
        pool_timeout=max(1, int(settings.db_pool_timeout_seconds)),
        pool_recycle=max(60, int(settings.db_pool_recycle_seconds)),
        pool_pre_ping=True,
    )
    return options


async def init_db() -> None:
    """Create the SQLAlchemy engine and session factory."""
    global _engine, _session_factory

    _engine = create_async_engine(_session_url(), **_engine_options())
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("Sync database engine ready", pool_mode=get_settings().db_pool_mode)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Sync database engine disposed")


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session that commits on success and rolls back on error.

        async with get_db_session() as session:
            await session.execute(text("..."), params)
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    session = _session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def _register_json_codecs(conn: asyncpg.Connection) -> None:
    # Job payloads are stored as jsonb and handled as dicts.
    await conn.set_type_codec("json", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog", format="text"
    )


async def get_db_pool() -> asyncpg.Pool:
    """Raw asyncpg pool used by the job queue's `FOR UPDATE SKIP LOCKED` claims."""
    global _pool
    if _pool is None:
        settings = get_settings()
        min_size = max(1, int(settings.db_raw_pool_min_size))
        _pool = await asyncpg.create_pool(
            _pool_url(),
            init=_register_json_codecs,
            min_size=min_size,
            max_size=max(min_size, int(settings.db_raw_pool_max_size)),
        )
        logger.info("Job queue pool ready", min_size=min_size)
    return _pool


async def close_db_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
