"""API tests for health probes and the root endpoint."""

import pytest


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["environment"] == "testing"

    @pytest.mark.asyncio
    async def test_live(self, client):
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_ready_without_redis(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"] == {"database": "ok", "redis": "not_configured", "outbox": "0"}

    @pytest.mark.asyncio
    async def test_not_ready_when_store_down(self, client, services):
        services.store.health_check = _failing_health_check

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "failed"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client):
        response = await client.get("/health")
        assert response.headers["X-Correlation-ID"]

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "phi-audit"


async def _failing_health_check() -> bool:
    return False
