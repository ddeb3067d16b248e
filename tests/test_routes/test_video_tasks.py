"""Tests for video task and character route endpoints.

Tests FastAPI route integration over real services backed by the in-memory
database, with the provider and storage faked:
- Caller identity (401 without X-User-Id)
- Submit / status / batch / list / backfill happy paths
- Orchestration errors mapped to HTTP status codes
- Sweep access control
- Character reference video, registration and identity endpoints
"""

import httpx
import pytest
import pytest_asyncio

from app.exceptions import ProviderError, ProviderUnavailable
from app.main import app
from app.schemas.provider import ProviderJobStatus
from tests.support.factories import CHARACTER_ID, OTHER_USER_ID, OWNER_ID, PROJECT_ID

OWNER_HEADERS = {"X-User-Id": OWNER_ID}


@pytest_asyncio.fixture
async def client(orchestrator, registrar):
    """Async client bound to the app with test services on app.state."""
    app.state.orchestrator = orchestrator
    app.state.registrar = registrar
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    await registrar.shutdown()
    app.state.orchestrator = None
    app.state.registrar = None


async def submit(client, **body) -> str:
    payload = {"project_id": PROJECT_ID, "shot_id": "shot-1", "prompt": "Harbor at dawn", "duration": 10}
    payload.update(body)
    response = await client.post("/api/v1/video-tasks", json=payload, headers=OWNER_HEADERS)
    assert response.status_code == 202, response.text
    return response.json()["task_ids"][0]


class TestSubmitEndpoint:
    @pytest.mark.asyncio
    async def test_submit_returns_task_ids(self, client):
        response = await client.post(
            "/api/v1/video-tasks",
            json={"project_id": PROJECT_ID, "prompt": "Harbor at dawn", "duration": 20},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 202
        assert len(response.json()["task_ids"]) == 2

    @pytest.mark.asyncio
    async def test_missing_identity_is_401(self, client):
        response = await client.post("/api/v1/video-tasks", json={"project_id": PROJECT_ID, "prompt": "x"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_project_is_400(self, client):
        response = await client.post(
            "/api/v1/video-tasks", json={"prompt": "Harbor at dawn"}, headers=OWNER_HEADERS
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "ValidationError"
        assert body["retryable"] is False

    @pytest.mark.asyncio
    async def test_foreign_project_is_403(self, client):
        response = await client.post(
            "/api/v1/video-tasks",
            json={"project_id": PROJECT_ID, "prompt": "Harbor at dawn"},
            headers={"X-User-Id": OTHER_USER_ID},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "AuthorizationError"

    @pytest.mark.asyncio
    async def test_unreachable_provider_is_503(self, client, fake_provider):
        fake_provider.assert_reachable.side_effect = ProviderUnavailable("Provider unreachable: timeout")

        response = await client.post(
            "/api/v1/video-tasks",
            json={"project_id": PROJECT_ID, "prompt": "Harbor at dawn"},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_service_not_configured_is_503(self, client):
        app.state.orchestrator = None

        response = await client.post(
            "/api/v1/video-tasks",
            json={"project_id": PROJECT_ID, "prompt": "Harbor at dawn"},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 503


class TestStatusEndpoints:
    @pytest.mark.asyncio
    async def test_get_status(self, client, fake_provider):
        task_id = await submit(client)
        fake_provider.get_job_status.side_effect = lambda job_id: ProviderJobStatus(
            job_id=job_id, status="processing", progress=35
        )

        response = await client.get(f"/api/v1/video-tasks/{task_id}", headers=OWNER_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["task_id"] == task_id
        assert body["status"] == "processing"
        assert body["progress"] == 35
        assert body["video_url"] is None

    @pytest.mark.asyncio
    async def test_unknown_task_is_404(self, client):
        response = await client.get("/api/v1/video-tasks/missing", headers=OWNER_HEADERS)

        assert response.status_code == 404
        assert response.json()["error"] == "TaskNotFound"

    @pytest.mark.asyncio
    async def test_provider_error_is_502_with_detail(self, client, fake_provider):
        task_id = await submit(client)
        fake_provider.get_job_status.side_effect = ProviderError(
            "Provider status failed", status_code=400, detail='{"error":"bad id"}'
        )

        response = await client.get(f"/api/v1/video-tasks/{task_id}", headers=OWNER_HEADERS)

        assert response.status_code == 502
        assert response.json()["detail"] == '{"error":"bad id"}'

    @pytest.mark.asyncio
    async def test_batch_status(self, client):
        task_id = await submit(client)

        response = await client.post(
            "/api/v1/video-tasks/status/batch",
            json={"task_ids": [task_id, "missing"]},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 200
        items = {item["task_id"]: item for item in response.json()}
        assert items[task_id]["view"]["status"] == "processing"
        assert items["missing"]["error_type"] == "TaskNotFound"

    @pytest.mark.asyncio
    async def test_batch_status_requires_ids(self, client):
        response = await client.post(
            "/api/v1/video-tasks/status/batch", json={"task_ids": []}, headers=OWNER_HEADERS
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_project_tasks(self, client):
        task_id = await submit(client)

        response = await client.get(f"/api/v1/video-tasks/projects/{PROJECT_ID}", headers=OWNER_HEADERS)

        assert response.status_code == 200
        [task] = response.json()
        assert task["id"] == task_id
        assert task["status"] == "processing"
        assert task["type"] == "shot_generation"
        assert task["progress"] == 0

    @pytest.mark.asyncio
    async def test_backfill(self, client):
        body = {"project_id": PROJECT_ID, "tasks": [{"id": "ext-1", "shot_id": "shot-1"}]}

        first = await client.post("/api/v1/video-tasks/backfill", json=body, headers=OWNER_HEADERS)
        second = await client.post("/api/v1/video-tasks/backfill", json=body, headers=OWNER_HEADERS)

        assert first.json() == {"inserted": 1, "updated": 0}
        assert second.json() == {"inserted": 0, "updated": 0}


class TestSweepEndpoint:
    @pytest.mark.asyncio
    async def test_requires_admin_or_secret(self, client, monkeypatch):
        monkeypatch.setenv("SWEEP_SECRET", "cron-token")

        anonymous = await client.post("/api/v1/video-tasks/sweep")
        wrong_token = await client.post(
            "/api/v1/video-tasks/sweep", headers={"Authorization": "Bearer nope"}
        )
        plain_user = await client.post("/api/v1/video-tasks/sweep", headers=OWNER_HEADERS)

        assert anonymous.status_code == 403
        assert wrong_token.status_code == 403
        assert plain_user.status_code == 403

    @pytest.mark.asyncio
    async def test_secret_allows_sweep(self, client, monkeypatch):
        monkeypatch.setenv("SWEEP_SECRET", "cron-token")
        await submit(client)

        response = await client.post(
            "/api/v1/video-tasks/sweep?limit=10&concurrency=2",
            headers={"Authorization": "Bearer cron-token"},
        )

        assert response.status_code == 200
        assert response.json()["checked"] == 1

    @pytest.mark.asyncio
    async def test_admin_allows_sweep(self, client, monkeypatch):
        monkeypatch.delenv("SWEEP_SECRET", raising=False)

        response = await client.post(
            "/api/v1/video-tasks/sweep?type=character_reference",
            headers={"X-User-Id": "ops", "X-User-Role": "admin"},
        )

        assert response.status_code == 200
        assert response.json()["checked"] == 0


class TestCharacterEndpoints:
    @pytest.mark.asyncio
    async def test_reference_video_without_registration(self, client):
        response = await client.post(
            f"/api/v1/characters/{CHARACTER_ID}/reference-video",
            json={"register": False},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 202
        body = response.json()
        assert body["character_id"] == CHARACTER_ID
        assert body["registration_started"] is False
        assert body["task_id"]

    @pytest.mark.asyncio
    async def test_reference_video_with_background_registration(self, client, registrar, fake_provider):
        fake_provider.get_job_status.side_effect = lambda job_id: ProviderJobStatus(
            job_id=job_id, status="completed", progress=100, result_url="https://files.provider.test/r.mp4"
        )

        response = await client.post(
            f"/api/v1/characters/{CHARACTER_ID}/reference-video", json={}, headers=OWNER_HEADERS
        )

        assert response.status_code == 202
        assert response.json()["registration_started"] is True
        for background in list(registrar._background):
            await background
        fake_provider.register_character_identity.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_register_with_explicit_url(self, client):
        response = await client.post(
            f"/api/v1/characters/{CHARACTER_ID}/register",
            json={"video_url": "https://cdn.example.com/ref.mp4"},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["identity_status"] == "registered"
        assert body["provider_identity_code"] == "fmraejvq"

    @pytest.mark.asyncio
    async def test_register_without_reference_is_400(self, client):
        response = await client.post(
            f"/api/v1/characters/{CHARACTER_ID}/register", json={}, headers=OWNER_HEADERS
        )

        assert response.status_code == 400
        assert response.json()["error"] == "MissingReferenceVideo"

    @pytest.mark.asyncio
    async def test_register_rejects_bad_timestamps(self, client):
        response = await client.post(
            f"/api/v1/characters/{CHARACTER_ID}/register",
            json={"video_url": "https://cdn.example.com/ref.mp4", "sample_timestamps": "one,three"},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_manual_identity(self, client):
        response = await client.post(
            f"/api/v1/characters/{CHARACTER_ID}/identity/manual",
            json={"username": " abc123 ", "reference_video_url": "https://cdn.example.com/ref.mp4"},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["identity_status"] == "registered"
        assert body["provider_identity_code"] == "abc123"

    @pytest.mark.asyncio
    async def test_manual_identity_blank_code_is_400(self, client):
        response = await client.post(
            f"/api/v1/characters/{CHARACTER_ID}/identity/manual",
            json={"identity_code": "  ", "reference_video_url": "https://cdn.example.com/ref.mp4"},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_identity_view(self, client):
        response = await client.get(f"/api/v1/characters/{CHARACTER_ID}/identity", headers=OWNER_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["character_id"] == CHARACTER_ID
        assert body["identity_status"] == "pending"
        assert body["latest_task_id"] is None

    @pytest.mark.asyncio
    async def test_identity_view_foreign_user_is_403(self, client):
        response = await client.get(
            f"/api/v1/characters/{CHARACTER_ID}/identity", headers={"X-User-Id": OTHER_USER_ID}
        )

        assert response.status_code == 403
