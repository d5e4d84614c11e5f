"""
Async database session management — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    engine = create_engine_for(settings.database.url)
    await create_tables(engine)
    factory = make_session_factory(engine)

get_session_factory() lazily builds one process-wide engine from the loaded
settings, for stores created without an explicit session factory.
"""
from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

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
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    # Already has async driver or unknown — return as-is
    return db_url


def _engine_kwargs(db_url: str, debug: bool = False) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": debug}

    if "sqlite" in db_url:
        # SQLite: concurrent queue pollers wait on the write lock instead of failing
        return {**base, "connect_args": {"check_same_thread": False, "timeout": 30}}

    # PostgreSQL / MySQL: connection pool tuning
    return {
        **base,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def create_engine_for(db_url: str, debug: bool = False) -> AsyncEngine:
    url = _to_async_url(db_url)
    return create_async_engine(url, **_engine_kwargs(url, debug))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Return the global engine, creating it if needed."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database.url, settings.debug)
        logger.info("database_engine_created",
                     dialect=_engine.dialect.name,
                     url=str(_engine.url).split("@")[-1] if "@" in str(_engine.url) else str(_engine.url))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
