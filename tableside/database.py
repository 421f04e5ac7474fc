"""
Database Connection Module
Handles the SQLAlchemy async engine (PostgreSQL via psycopg, SQLite via aiosqlite).
"""

import logging
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tableside.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite pools do not accept sizing arguments, so those are only
    passed to server databases.
    """
    kwargs = {"echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.database_pool_size,  # Connection pool size
            max_overflow=settings.database_max_overflow,  # Extra connections when pool is full
            pool_pre_ping=True,
        )
    return create_async_engine(database_url, **kwargs)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,  # Objects remain accessible after commit
    )


# Create async engine
engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory - creates new database sessions
async_session_maker = build_session_maker(engine)


def is_lock_conflict(exc: DBAPIError) -> bool:
    """Deadlocks, serialization failures, lock timeouts and SQLite busy errors."""
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    markers = ("deadlock", "could not serialize", "lock", "database is locked", "busy")
    return any(marker in message for marker in markers)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: AsyncEngine = engine) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Import models so they register on Base.metadata
    from tableside import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
