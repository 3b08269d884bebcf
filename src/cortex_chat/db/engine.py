"""
Database engine configuration for the async conversation store.

Provides async SQLAlchemy 2.0 engine and session management. PostgreSQL via
asyncpg is the production target; SQLite URLs (``sqlite+aiosqlite://``) are
accepted for local runs and tests and get a single shared connection.

Configuration Environment Variables (see cortex_chat.config):
    DATABASE_URL: Connection string, e.g. postgresql+asyncpg://user:pw@host/db
    SQL_ECHO: Enable SQL statement logging for debugging
    DB_POOL_SIZE / DB_MAX_OVERFLOW / DB_POOL_TIMEOUT / DB_POOL_RECYCLE:
        Connection pool tuning (ignored for SQLite)

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from cortex_chat.config import ServiceSettings, get_settings
from cortex_chat.db import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = logging.getLogger(__name__)


# ============================================================================
# Engine Configuration
# ============================================================================

def create_engine_for(database_url: str, settings: Optional[ServiceSettings] = None) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine for ``database_url``.

    Args:
        database_url: SQLAlchemy async URL
        settings: Pool settings source (defaults to the cached settings)

    Returns:
        AsyncEngine: Configured async engine instance

    Note:
        SQLite gets a StaticPool so an in-memory database survives across
        sessions; server databases use the default QueuePool.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    settings = settings or get_settings()

    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=settings.sql_echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        database_url,
        echo=settings.sql_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,  # Verify connections before use
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``; created once and reused."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent attribute expiry after commit
        autoflush=False,
    )


# Global engine/session factory - created lazily by get_engine()
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    global _engine, _session_factory
    if _engine is None:
        _engine = create_engine_for(get_settings().database_url)
        _session_factory = create_session_factory(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    assert _session_factory is not None
    return _session_factory


# ============================================================================
# Public API
# ============================================================================

async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Initialize database tables.

    Creates all SQLModel tables if they don't exist. Called during
    application startup via the lifespan context manager. Idempotent.

    Raises:
        SQLAlchemyError: If database connection or table creation fails

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    engine = engine or get_engine()
    logger.info("Creating database tables if not exists...")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables initialized")


async def close_db() -> None:
    """
    Close all database connections.

    Called during application shutdown to dispose of the connection pool.

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    global _engine, _session_factory
    if _engine is None:
        return
    logger.info("Closing database connections...")
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connections closed")


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope: commit on success, roll back on any exception.

    Example:
        async with session_scope(factory) as session:
            session.add(thread)

    Last Grunted: 10/19/2026 09:15:00 AM UTC
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
