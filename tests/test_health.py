"""
Tests for health and root endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from arena_engine import __version__
from arena_engine.main import app


@pytest.fixture
def client() -> TestClient:
    """Create test client."""
    return TestClient(app)


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_returns_status(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert "T" in data["time"]
        assert data["uptime_seconds"] >= 0

    def test_health_reports_upstreams(self, client: TestClient) -> None:
        """With no credentials in the environment nothing is configured."""
        data = client.get("/health").json()
        assert data["backend_configured"] is False
        assert data["live_quotes_configured"] is False

    def test_request_id_echoed(self, client: TestClient) -> None:
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_request_id_generated(self, client: TestClient) -> None:
        response = client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 12


class TestRootEndpoint:
    """Tests for / endpoint."""

    def test_root_returns_api_info(self, client: TestClient) -> None:
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Arena Engine"
        assert data["version"] == __version__
