"""Async database engine and session factory.

The Task Store and the ownership checker are constructed with a session
factory and open one short transaction per operation:

    async with session_factory() as db, db.begin():
        task = await db.get(GenerationTask, task_id)

When DATABASE_URL is set the module builds the production engine (asyncpg,
pooled) at import time; otherwise async_session_factory stays None and the
application starts with the task routes disabled.
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.config import get_database_url

POOL_SIZE = 10
MAX_OVERFLOW = 5


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose rows stay readable after commit.

    Services return ORM rows to callers after the transaction closes, so
    expire_on_commit must stay off.
    """
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


def build_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(
        database_url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )


engine: AsyncEngine | None = build_engine(get_database_url()) if os.getenv("DATABASE_URL") else None

async_session_factory: async_sessionmaker[AsyncSession] | None = (
    build_session_factory(engine) if engine is not None else None
)


async def dispose_engine() -> None:
    """Close pooled connections on shutdown (no-op when unconfigured)."""
    if engine is not None:
        await engine.dispose()


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    In-memory SQLite is shared across connections through StaticPool so
    every session created by the factory sees the same tables.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, session factory).
    """
    test_engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return test_engine, build_session_factory(test_engine)
