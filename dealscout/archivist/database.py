"""
Database session management for async SQLAlchemy operations.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlmodel import SQLModel

from ..config.settings import settings

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend.

    PostgreSQL gets the pooled production configuration; anything else
    (SQLite for local runs and tests) gets driver defaults plus a lock
    timeout so concurrent writers wait instead of failing.
    """
    if database_url.startswith("postgresql"):
        return create_async_engine(
            database_url,
            echo=False,
            pool_size=20,
            max_overflow=30,
            pool_pre_ping=True,   # Detect stale connections before use
            pool_recycle=3600,    # Recycle connections every hour
            pool_timeout=30,      # Wait max 30s for connection from pool
            connect_args={
                "command_timeout": 30,  # Timeout for individual queries (asyncpg)
                "server_settings": {
                    "statement_timeout": "30000",  # PostgreSQL statement timeout (ms)
                },
            },
        )
    return create_async_engine(
        database_url,
        echo=False,
        connect_args={"timeout": 30},
    )


engine = build_engine(settings.database_url)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def make_session_scope(factory: async_sessionmaker) -> SessionScope:
    """Build a get_session()-style context manager over a session factory.

    The session commits when the block exits cleanly and rolls back (then
    re-raises) on any exception.
    """
    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                logger.error(f"Database session error, rolling back: {e}")
                await session.rollback()
                raise

    return scope


get_session = make_session_scope(async_session_factory)


async def init_db(target: AsyncEngine = None):
    """Initialize database tables."""
    async with (target or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions.

    Use get_session() for non-FastAPI code (scheduler, dispatcher, etc).
    Use get_db() only as a FastAPI Depends() injection.
    """
    async with get_session() as session:
        yield session
