"""Integration tests for health check endpoints."""

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.asyncio


async def test_health(async_client: AsyncClient):
    response = await async_client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Request-ID" in response.headers


async def test_health_db(async_client: AsyncClient):
    response = await async_client.get("/api/v1/health/db")

    assert response.status_code == 200
    assert response.json()["database"] == "connected"


async def test_readiness_without_redis(async_client: AsyncClient, monkeypatch):
    monkeypatch.setattr("api.routes.health.settings.redis_url", None)

    response = await async_client.get("/api/v1/health/ready")

    assert response.json() == {"ready": True, "database": "ok", "redis": "disabled"}


async def test_liveness(async_client: AsyncClient):
    response = await async_client.get("/api/v1/health/live")

    assert response.json() == {"alive": True}


async def test_request_id_is_echoed_when_valid(async_client: AsyncClient):
    request_id = "0f8fad5b-d9cb-469f-a165-70867728950e"

    response = await async_client.get("/api/v1/health/live", headers={"X-Request-ID": request_id})

    assert response.headers["X-Request-ID"] == request_id


async def test_invalid_request_id_is_replaced(async_client: AsyncClient):
    response = await async_client.get("/api/v1/health/live", headers={"X-Request-ID": "<script>"})

    assert response.headers["X-Request-ID"] != "<script>"
