"""
CaseCompass Database Module
Async SQLAlchemy engine and sessions. SQLite for development and tests,
PostgreSQL (asyncpg) in production.

Request handlers get a session from `get_db`; the evidence pipeline and
other background work open their own with `get_db_session`, since the
orchestrator runs several steps concurrently and sessions are not shared.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from app.core.config import Settings, get_settings

# Seconds a SQLite writer waits for a concurrent pipeline step to commit
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(settings: Settings) -> dict:
    if settings.database_url.startswith("sqlite"):
        return {
            "poolclass": NullPool,
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        }
    return {
        "poolclass": AsyncAdaptedQueuePool,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    """Create the engine on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            **_engine_options(settings),
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session_factory


@asynccontextmanager
async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Session for services and background tasks: committed on success,
    rolled back on any error.

    Usage:
        async with get_db_session() as db:
            memory = await get_or_create_case_memory(db, user_id)
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency; the request's writes commit after the handler returns."""
    async with get_db_session() as session:
        yield session


async def insert_ignoring_conflict(db: AsyncSession, model, values: dict, index_elements: list[str]) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING for one-row-per-key tables that
    concurrent requests may both try to create.
    Returns False when a row with the same key already existed.
    """
    dialect = postgresql if db.get_bind().dialect.name == "postgresql" else sqlite
    statement = dialect.insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await db.execute(statement)
    return bool(result.rowcount)


async def init_db() -> None:
    """Create any missing tables. Migrations are the source of truth in production."""
    from app.models import models  # noqa: F401  register tables

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine on shutdown."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_factory = None
