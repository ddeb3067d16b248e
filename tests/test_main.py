"""Tests for FastAPI application endpoints.

Tests cover:
- Health check endpoint (/health)
- Orchestration routes registered on the application
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture
def client() -> TestClient:
    """Create FastAPI test client (lifespan not started)."""
    return TestClient(app)


class TestHealthEndpoint:
    def test_health_endpoint_returns_200(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK

    def test_health_endpoint_reports_service(self, client: TestClient) -> None:
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["service"] == "storyboard-video-orchestrator"

    def test_health_reports_missing_orchestrator(self, client: TestClient) -> None:
        app.state.orchestrator = None

        assert client.get("/health").json()["orchestrator"] is False

    def test_health_reports_wired_orchestrator(self, client: TestClient) -> None:
        app.state.orchestrator = object()
        try:
            assert client.get("/health").json()["orchestrator"] is True
        finally:
            app.state.orchestrator = None


class TestRouting:
    @pytest.mark.parametrize(
        "path",
        [
            "/api/v1/video-tasks",
            "/api/v1/video-tasks/{task_id}",
            "/api/v1/video-tasks/status/batch",
            "/api/v1/video-tasks/projects/{project_id}",
            "/api/v1/video-tasks/backfill",
            "/api/v1/video-tasks/sweep",
            "/api/v1/characters/{character_id}/reference-video",
            "/api/v1/characters/{character_id}/register",
            "/api/v1/characters/{character_id}/identity/manual",
            "/api/v1/characters/{character_id}/identity",
        ],
    )
    def test_route_registered(self, path: str) -> None:
        assert path in {route.path for route in app.routes}

    def test_task_routes_503_without_orchestrator(self, client: TestClient) -> None:
        app.state.orchestrator = None

        response = client.get("/api/v1/video-tasks/some-task", headers={"X-User-Id": "user-1"})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_unknown_path_is_404(self, client: TestClient) -> None:
        assert client.get("/nonexistent").status_code == status.HTTP_404_NOT_FOUND
