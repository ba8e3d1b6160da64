"""Tests for the health check endpoint."""
from httpx import AsyncClient

from core.redis import RedisClient, get_redis_client, set_redis_client


async def test_health_endpoint_returns_200(client: AsyncClient) -> None:
    """Test that the health endpoint returns 200 OK."""
    response = await client.get("/health")
    assert response.status_code == 200


async def test_health_endpoint_response_structure(client: AsyncClient) -> None:
    """Test that the health endpoint returns the expected structure."""
    response = await client.get("/health")
    data = response.json()
    assert set(data) == {"status", "database", "redis", "live_updates"}


async def test_health_endpoint_redis_unavailable(client: AsyncClient) -> None:
    """Without Redis the app is still healthy and delivers live updates in-process."""
    disabled_client = RedisClient("redis://localhost:6379", enabled=False)
    await disabled_client.connect()

    original_client = get_redis_client()
    set_redis_client(disabled_client)

    try:
        response = await client.get("/health")
        data = response.json()

        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["redis"] == "unavailable"
        assert data["live_updates"] == "in-process"
    finally:
        set_redis_client(original_client)
        await disabled_client.close()
