"""
Engine and session plumbing for the SQL pipeline store.

One process-wide engine is built lazily from ``settings.database.url``;
stores that need their own database (tests, the migration script) build
a standalone session factory with ``create_session_factory``. Either way
every unit of work runs inside ``session_scope``, which commits on a
clean exit and rolls back on any exception.

Sync URLs from settings.yaml are mapped onto their async drivers:
postgresql/postgres use asyncpg, mysql uses aiomysql, sqlite uses aiosqlite.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "postgresql+psycopg2": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

# Milliseconds a SQLite writer waits on a locked file before erroring.
_SQLITE_BUSY_TIMEOUT_MS = 5000

_default_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}{sep}{rest}"


def _redacted(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def _build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    url = _to_async_url(db_url)
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo,
                                     connect_args={"check_same_thread": False})

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout = {_SQLITE_BUSY_TIMEOUT_MS}")
            cursor.close()

        return engine

    # Server databases: pooled, with stale connections recycled
    return create_async_engine(
        url, echo=echo,
        pool_size=10, max_overflow=20, pool_timeout=30,
        pool_recycle=1800, pool_pre_ping=True,
    )


def create_session_factory(db_url: str, echo: bool = False) -> async_sessionmaker[AsyncSession]:
    """Standalone engine + session factory bound to ``db_url``."""
    return async_sessionmaker(_build_engine(db_url, echo), class_=AsyncSession,
                              expire_on_commit=False)


def _bound_engine(factory: async_sessionmaker[AsyncSession]) -> AsyncEngine:
    return factory.kw["bind"]


def _default() -> async_sessionmaker[AsyncSession]:
    global _default_factory
    if _default_factory is None:
        settings = get_settings()
        _default_factory = create_session_factory(settings.database.url, echo=settings.debug)
        engine = _bound_engine(_default_factory)
        logger.info("database_engine_created", dialect=engine.dialect.name,
                    url=_redacted(engine))
    return _default_factory


def get_engine() -> AsyncEngine:
    """The process-wide engine configured by settings.database.url."""
    return _bound_engine(_default())


@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[AsyncSession]:
    """Run one transaction; commit on success, roll back and re-raise on error."""
    async with (factory or _default())() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(factory: Optional[async_sessionmaker[AsyncSession]] = None) -> list[str]:
    """Create any missing pipeline tables. Returns the table names defined."""
    engine = _bound_engine(factory or _default())
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return sorted(Base.metadata.tables)


async def init_db() -> None:
    """Create the pipeline tables on the process-wide engine."""
    tables = await create_tables()
    logger.info("database_initialized", dialect=get_engine().dialect.name, tables=tables)


async def close_db() -> None:
    """Dispose the process-wide engine; the next use rebuilds it from settings."""
    global _default_factory
    if _default_factory is None:
        return
    await _bound_engine(_default_factory).dispose()
    _default_factory = None
    logger.info("database_closed")
