"""
Database session management for vmplane.

Provides the async SQLAlchemy session factory shared by the API server and
the worker. Worker handlers open one short session per state transition so
that transitional statuses are committed before any provisioner call.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vmplane.config import settings
from vmplane.logging_config import get_logger

logger = get_logger(__name__)

_engine = None
_async_session_factory = None


async def init_db(pool_size: int = 10, max_overflow: int = 20) -> None:
    """Initialize database connection pool."""
    global _engine, _async_session_factory  # noqa: PLW0603
    logger.info("Initializing database connection", pool_size=pool_size)

    _engine = create_async_engine(
        str(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )

    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with _engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    """Close database connection pool."""
    global _engine, _async_session_factory  # noqa: PLW0603
    if _engine is not None:
        logger.info("Closing database connection pool")
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession]:
    """FastAPI dependency that provides a read-write database session."""
    async with get_db_session() as session:
        yield session


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession]:
    """Open a session that commits on clean exit and rolls back on error.

    Used directly by the worker, the reconciler and the streaming executor,
    which live outside the request/dependency lifecycle.
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized; call init_db() first")

    async with _async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db_health() -> bool:
    """Check database health for readiness probe."""
    try:
        if _engine is None:
            return False
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return False
