"""Tests for /health endpoints."""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from promptgateway.main import app
from promptgateway.providers import Gateway, ProviderRegistry, build_default_registry


@pytest.fixture(autouse=True)
def cleanup_state():
    yield
    for name in ("registry", "gateway"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# /health
# ---------------------------------------------------------------------------
class TestHealthEndpoint:
    async def test_returns_200(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200

    async def test_response_structure(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        body = response.json()
        assert body["status"] == "healthy"
        assert "timestamp" in body
        assert "version" in body

    async def test_version_matches_settings(self, client: AsyncClient) -> None:
        from promptgateway.config import settings

        response = await client.get("/health")
        assert response.json()["version"] == settings.app_version


# ---------------------------------------------------------------------------
# /health/live
# ---------------------------------------------------------------------------
class TestLivenessEndpoint:
    async def test_response_body(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


# ---------------------------------------------------------------------------
# /health/ready
# ---------------------------------------------------------------------------
class TestReadinessEndpoint:
    async def test_ready_when_initialised(self, client: AsyncClient) -> None:
        app.state.registry = build_default_registry()
        app.state.gateway = Gateway()
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ready",
            "checks": {"registry": "ok", "gateway": "ok"},
        }

    async def test_unavailable_before_startup(self, client: AsyncClient) -> None:
        response = await client.get("/health/ready")
        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unavailable"
        assert set(body["errors"]) == {"registry", "gateway"}

    async def test_empty_registry_is_not_ready(self, client: AsyncClient) -> None:
        app.state.registry = ProviderRegistry()
        app.state.gateway = Gateway()
        response = await client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["errors"]["registry"] == "no providers registered"
