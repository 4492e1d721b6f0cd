"""Health endpoint tests."""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from shortlink.cache import LinkCache
from shortlink.enums import HealthStatus
from shortlink.errors import StoreUnavailableError
from shortlink.store import LinkStore


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == HealthStatus.HEALTHY.value
    assert data["database"] == HealthStatus.HEALTHY.value
    assert data["cache"] == HealthStatus.HEALTHY.value


@pytest.mark.asyncio
async def test_health_check_reports_cache_outage(client: AsyncClient) -> None:
    with patch.object(LinkCache, "ping", AsyncMock(side_effect=RedisConnectionError("down"))):
        response = await client.get("/health")

    data = response.json()
    assert data["status"] == HealthStatus.UNHEALTHY.value
    assert data["database"] == HealthStatus.HEALTHY.value
    assert data["cache"] == HealthStatus.UNHEALTHY.value


@pytest.mark.asyncio
async def test_store_outage_is_a_bare_503(client: AsyncClient) -> None:
    with patch.object(LinkStore, "find_link", AsyncMock(side_effect=StoreUnavailableError())):
        response = await client.get("/abc123", follow_redirects=False)

    assert response.status_code == 503
    assert response.json() == {"error": "Service is temporarily unavailable."}
