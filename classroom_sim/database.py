"""
classroom_sim/database.py
Async database engine and session factory
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from classroom_sim.config import settings
from classroom_sim.orm.base import Base
import classroom_sim.orm  # noqa: F401  ensures all models are registered

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine with pool settings suited to the backend.

    SQLite has different pool needs than PostgreSQL: a busy timeout lets
    concurrent writers queue instead of failing immediately.
    """
    if "sqlite" in database_url.lower():
        return create_async_engine(
            database_url,
            echo=echo,
            future=True,
            connect_args={
                "timeout": 30.0,   # SQLite busy timeout in seconds
            }
        )
    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=20,           # Base pool size
        max_overflow=30,        # Additional connections under load
        pool_timeout=30,        # Wait up to 30s for connection
        pool_recycle=3600,      # Recycle connections after 1 hour
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url, echo=settings.sql_echo)
AsyncSessionLocal = build_session_factory(engine)


async def get_db():
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None):
    """Create all tables that do not exist yet."""
    target = bind or engine
    logger.info("Initializing database...")

    try:
        logger.info(f"Database dialect: {target.url.get_backend_name()}")
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialization complete")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise


async def close_db(bind: Optional[AsyncEngine] = None):
    """Close database connection"""
    await (bind or engine).dispose()
    logger.info("Database connection closed")
