"""
Health endpoint tests
"""

import datetime

import pytest
from httpx import AsyncClient, ASGITransport

from app.db.config import StoreConfig
from app.db.errors import StoreUnavailable
from app.dependencies import get_executor
from app.main import app as real_app


class UnreachableExecutor:
    """Executor stand-in whose store never answers"""

    config = StoreConfig()

    async def ping(self, timeout=None):
        raise StoreUnavailable("ping failed after 4 attempts")


def _client():
    return AsyncClient(transport=ASGITransport(app=real_app), base_url="http://test")


@pytest.fixture
def with_executor(executor):
    real_app.dependency_overrides[get_executor] = lambda: executor
    yield executor
    real_app.dependency_overrides.clear()


@pytest.fixture
def without_store():
    real_app.dependency_overrides[get_executor] = lambda: UnreachableExecutor()
    yield
    real_app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Test health check endpoints"""

    async def test_health_check_success(self):
        async with _client() as client:
            response = await client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert isinstance(data["uptime"], (int, float))
        try:
            datetime.datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        except ValueError:
            pytest.fail("Timestamp is not in valid ISO format")

    async def test_liveness(self):
        async with _client() as client:
            response = await client.get("/api/v1/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    async def test_readiness_with_store(self, with_executor):
        async with _client() as client:
            response = await client.get("/api/v1/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_readiness_without_store(self, without_store):
        async with _client() as client:
            response = await client.get("/api/v1/health/ready")
        assert response.status_code == 503
        body = response.json()
        assert body["success"] is False
        assert "not ready" in body["error"]

    async def test_detailed_reports_store(self, with_executor):
        async with _client() as client:
            response = await client.get("/api/v1/health/detailed")
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["store"]["reachable"] is True

    async def test_detailed_degraded_without_store(self, without_store):
        async with _client() as client:
            response = await client.get("/api/v1/health/detailed")
        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "degraded"
        assert data["components"]["store"]["reachable"] is False


async def test_root_endpoint():
    async with _client() as client:
        response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["health"] == "/api/v1/health"
