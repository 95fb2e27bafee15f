"""
Async engine and session scope for the SQL state store.

The configured URL may name a sync driver; it is rewritten to the async
driver SQLAlchemy needs:

  postgresql:// postgres://   → postgresql+asyncpg://   (postgres extra)
  mysql:// mysql+pymysql://   → mysql+aiomysql://       (mysql extra)
  sqlite://                   → sqlite+aiosqlite://

Lifecycle:
    await init_db()                    # startup, creates session_state
    async with get_session() as db:    # one unit of work, commits on exit
        ...
    await close_db()                   # shutdown

``init_db(url)`` and ``get_engine(url)`` accept an explicit URL, which
takes precedence over settings when the engine is first created.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "mysql+pymysql://": "mysql+aiomysql://",
    "mysql://": "mysql+aiomysql://",
    "sqlite://": "sqlite+aiosqlite://",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    for prefix, async_prefix in ASYNC_DRIVERS.items():
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def _engine_kwargs(async_url: str, echo: bool) -> dict:
    if async_url.startswith("sqlite"):
        # One file, one writer: the default pool is enough
        return {"echo": echo}
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine
    settings = get_settings()
    async_url = _to_async_url(db_url or settings.database.url)
    _engine = create_async_engine(async_url, **_engine_kwargs(async_url, settings.debug))
    logger.info("database_engine_created", dialect=_engine.dialect.name, database=_engine.url.database)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit when the block exits cleanly, else roll back."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name, tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
