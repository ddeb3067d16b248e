"""Shared pytest fixtures for async database and collaborator testing.

This module provides reusable fixtures for testing the Task Store,
orchestrator and registrar against an in-memory SQLite database, with the
provider client and object storage replaced by AsyncMock fakes.
"""

import itertools
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from app.clients.video_provider import VideoProviderClient
from app.config import ProviderConfig, StorageConfig
from app.database import create_test_engine
from app.models import Base
from app.schemas.provider import ProviderJobAck, ProviderJobStatus
from app.services.artifact_migrator import ArtifactMigrator
from app.services.character_registrar import CharacterRegistrar
from app.services.collaborators import DatabaseOwnershipChecker, NoopCreditsService
from app.services.task_orchestrator import TaskOrchestrator
from app.services.task_store import TaskStore
from app.utils.retry import RetryPolicy
from tests.support.factories import (
    CDN_BASE,
    OTHER_PROJECT_ID,
    OTHER_USER_ID,
    PORTRAIT_PROJECT_ID,
    VIDEO_BYTES,
    create_character,
    create_project,
)


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(api_key="test-key", base_url="https://provider.test")


@pytest.fixture
def storage_config() -> StorageConfig:
    return StorageConfig(
        endpoint_url="https://r2.example.com",
        bucket_name="videos",
        access_key_id="ak",
        secret_access_key="sk",
        public_base_url=CDN_BASE,
        transfer_timeout_seconds=30.0,
    )


@pytest.fixture
def no_wait_retry() -> RetryPolicy:
    """Retry policy with zero backoff for fast tests."""
    return RetryPolicy(max_attempts=3, initial_wait=0, max_wait=0)


@pytest_asyncio.fixture
async def session_factory():
    """Create an in-memory SQLite database with all tables.

    Yields:
        async_sessionmaker bound to the test engine.
    """
    engine, factory = create_test_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(session_factory):
    """Seed projects and a character.

    - proj-1 (16:9) and proj-portrait (9:16) owned by user-1
    - proj-2 owned by user-2
    - char-1 in proj-1 with one reference image, not registered
    """
    async with session_factory() as db, db.begin():
        db.add_all(
            [
                create_project(),
                create_project(PORTRAIT_PROJECT_ID, aspect_ratio="9:16"),
                create_project(OTHER_PROJECT_ID, user_id=OTHER_USER_ID),
            ]
        )
        await db.flush()
        db.add(create_character())
    return session_factory


@pytest.fixture
def store(seeded) -> TaskStore:
    return TaskStore(seeded)


@pytest.fixture
def fake_provider() -> MagicMock:
    """Provider client fake.

    submit_job hands out job-1, job-2, ... ; the probe succeeds; status
    lookups must be configured per test.
    """
    provider = MagicMock(spec=VideoProviderClient)
    counter = itertools.count(1)
    provider.assert_reachable = AsyncMock(return_value=None)
    provider.submit_job = AsyncMock(
        side_effect=lambda spec: ProviderJobAck(job_id=f"job-{next(counter)}", status="queued")
    )
    provider.get_job_status = AsyncMock(
        side_effect=lambda job_id: ProviderJobStatus(job_id=job_id, status="processing", progress=10)
    )
    provider.register_character_identity = AsyncMock(return_value="fmraejvq")
    provider.close = AsyncMock()
    return provider


@pytest.fixture
def fake_storage() -> MagicMock:
    storage = MagicMock()
    storage.put_object = AsyncMock(side_effect=lambda key, data, content_type: f"{CDN_BASE}/{key}")
    return storage


@pytest.fixture
def download_transport() -> httpx.MockTransport:
    """Serves VIDEO_BYTES for any provider-hosted URL."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=VIDEO_BYTES)

    return httpx.MockTransport(handler)


@pytest_asyncio.fixture
async def migrator(fake_storage, storage_config, no_wait_retry, download_transport):
    migrator = ArtifactMigrator(
        fake_storage,
        storage_config,
        retry_policy=no_wait_retry,
        transport=download_transport,
    )
    yield migrator
    await migrator.close()


@pytest.fixture
def credits() -> MagicMock:
    credits = MagicMock(spec=NoopCreditsService)
    credits.calculate_cost = AsyncMock(return_value=5)
    credits.consume_credits = AsyncMock(return_value=MagicMock(success=True, error=None))
    return credits


@pytest.fixture
def orchestrator(store, fake_provider, migrator, seeded, credits) -> TaskOrchestrator:
    return TaskOrchestrator(
        store=store,
        provider=fake_provider,
        migrator=migrator,
        ownership=DatabaseOwnershipChecker(seeded),
        credits=credits,
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def registrar(orchestrator, store, fake_provider, sleeps) -> CharacterRegistrar:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return CharacterRegistrar(
        orchestrator,
        store,
        fake_provider,
        max_wait_seconds=30,
        poll_interval_seconds=5,
        sleep=fake_sleep,
    )
