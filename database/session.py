"""
Async engine and transaction scope for the SQL store.

``database.url`` names the plain dialect; the async driver is filled in here:

  postgresql / postgres  → asyncpg     (extra: postgres)
  mysql                  → aiomysql    (extra: mysql)
  sqlite                 → aiosqlite

Every store call runs in its own ``get_session()`` block, which is one
transaction. The cron worker and the API each call ``init_db()`` at start
and ``close_db()`` at shutdown.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}
_ASYNC_DRIVER_NAMES = {"asyncpg", "aiomysql", "aiosqlite"}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None
_url_override: Optional[str] = None


def async_url(db_url: str) -> str:
    """Swap a sync driver for the async one. Async and unknown URLs pass through."""
    scheme, sep, rest = db_url.partition("://")
    dialect, _, driver = scheme.partition("+")
    if not sep or driver in _ASYNC_DRIVER_NAMES or dialect not in ASYNC_DRIVERS:
        return db_url
    return f"{ASYNC_DRIVERS[dialect]}{sep}{rest}"


def _engine_options(db_url: str) -> dict:
    options: dict = {"echo": get_settings().database.echo}
    if db_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(pool_size=10, max_overflow=20, pool_recycle=1800, pool_pre_ping=True)
    return options


def configure_database(url: Optional[str]) -> None:
    """Use ``url`` instead of settings.database.url (tests, CLI). None goes back to settings."""
    global _url_override
    _url_override = url


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        db_url = async_url(_url_override or get_settings().database.url)
        _engine = create_async_engine(db_url, **_engine_options(db_url))
        # Host part only, credentials stay out of the logs
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    url=str(_engine.url).rsplit("@", 1)[-1])
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """One transaction: committed when the block exits, rolled back if it raises."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessions() as session:
        async with session.begin():
            yield session


async def init_db() -> None:
    """Create any missing tables."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
