"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from taskscheduler.config import get_settings
from taskscheduler.db.models import Base, QueueCollection

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite transactions take the write lock up front.

    pysqlite defers BEGIN, so two connections racing on the same
    conditional update could both read before either writes. BEGIN
    IMMEDIATE serializes them through the busy timeout instead.
    """
    if not engine.url.drivername.startswith("sqlite"):
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """
    Create an async database engine for the given URL.

    SQLite gets a NullPool so every session opens its own connection,
    the way separate dispatcher processes would.

    Args:
        database_url: The database URL.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = get_settings()

    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
            echo=False,
        )
        _configure_sqlite(engine)
        return engine

    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        _engine = create_engine_for_url(get_settings().database_url)
    return _engine


async def init_db(database_url: str | None = None) -> None:
    """
    Initialize the database connection and session factory.
    Should be called on application startup.

    Args:
        database_url: Optional URL overriding the configured one.
    """
    global _engine, AsyncSessionLocal
    if database_url is not None:
        _engine = create_engine_for_url(database_url)

    engine = get_engine()
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # Only the registry is static; queue tables are provisioned on demand
    async with engine.begin() as conn:
        await conn.run_sync(
            Base.metadata.create_all,
            tables=[QueueCollection.__table__],
        )

    logger.info("Database connection initialized")


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on application shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession]:
    """
    Context manager for getting async database sessions.

    Yields:
        AsyncSession: An async database session.
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
