"""
Integration tests for health endpoint.
"""
import pytest
from httpx import AsyncClient
from datetime import datetime

from filevault.main import app


@pytest.mark.asyncio
async def test_health_check_success(client: AsyncClient):
    """Test health check endpoint returns healthy status."""
    response = await client.get("/health")

    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "connected"
    assert data["kms_provider"] == "local-kms-v1"


@pytest.mark.asyncio
async def test_health_check_response_format(client: AsyncClient):
    """Test that health check response has correct format."""
    response = await client.get("/health")

    assert response.status_code == 200

    data = response.json()
    for field in ["status", "database", "kms_provider", "timestamp"]:
        assert field in data, f"Missing required field: {field}"

    assert isinstance(data["status"], str)
    assert isinstance(data["database"], str)
    assert isinstance(data["timestamp"], str)


@pytest.mark.asyncio
async def test_health_check_timestamp_format(client: AsyncClient):
    """Test that timestamp is in ISO format."""
    response = await client.get("/health")

    data = response.json()
    try:
        parsed_time = datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        now = datetime.now(parsed_time.tzinfo)
        assert abs((now - parsed_time).total_seconds()) < 60, "Timestamp is not recent"
    except ValueError:
        pytest.fail("Invalid timestamp format in response")


@pytest.mark.asyncio
async def test_health_check_without_kms(client: AsyncClient):
    """Service reports degraded when no KMS provider is configured."""
    app.state.kms_provider = None

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["kms_provider"] == "unconfigured"


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["health"] == "/health"
