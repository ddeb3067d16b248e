"""Tests for database engine and session management.

Tests the test engine helper, the shared in-memory database behaviour
the Task Store relies on, and engine lifecycle helpers.
"""

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from app.database import build_engine, create_test_engine, dispose_engine
from app.models import Base, Project
from tests.support.factories import OWNER_ID, create_project


@pytest.mark.asyncio
async def test_create_test_engine_executes_queries():
    engine, session_factory = create_test_engine()

    async with session_factory() as session:
        result = await session.execute(text("SELECT 1"))
        assert result.scalar() == 1

    await engine.dispose()


@pytest.mark.asyncio
async def test_session_expire_on_commit_is_false(session_factory):
    """Rows stay readable after the transaction that loaded them commits."""
    async with session_factory() as session:
        assert session.sync_session.expire_on_commit is False


@pytest.mark.asyncio
async def test_sessions_share_in_memory_database():
    engine, session_factory = create_test_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_factory() as session, session.begin():
        session.add(create_project("proj-shared", OWNER_ID))

    async with session_factory() as session:
        found = await session.get(Project, "proj-shared")
        assert found is not None
        assert found.user_id == OWNER_ID

    await engine.dispose()


@pytest.mark.asyncio
async def test_failed_transaction_rolls_back(session_factory):
    async with session_factory() as session, session.begin():
        session.add(create_project("proj-dup", OWNER_ID))

    with pytest.raises(IntegrityError):
        async with session_factory() as session, session.begin():
            session.add(create_project("proj-dup", "someone-else"))

    async with session_factory() as session:
        rows = (await session.execute(select(Project).where(Project.id == "proj-dup"))).scalars().all()
        assert [row.user_id for row in rows] == [OWNER_ID]


class TestEngineLifecycle:
    @pytest.mark.asyncio
    async def test_dispose_is_noop_when_unconfigured(self, mocker):
        mocker.patch("app.database.engine", None)

        await dispose_engine()

    @pytest.mark.asyncio
    async def test_dispose_closes_configured_engine(self, mocker):
        engine = mocker.MagicMock()
        engine.dispose = mocker.AsyncMock()
        mocker.patch("app.database.engine", engine)

        await dispose_engine()

        engine.dispose.assert_awaited_once()

    def test_build_engine_uses_pool_settings(self, mocker):
        create = mocker.patch("app.database.create_async_engine")

        build_engine("postgresql+asyncpg://u:p@db:5432/app")

        kwargs = create.call_args.kwargs
        assert kwargs["pool_size"] == 10
        assert kwargs["max_overflow"] == 5
        assert kwargs["pool_pre_ping"] is True
