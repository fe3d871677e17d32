import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check_reports_stopped_worker(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "worker": "stopped"}


@pytest.mark.asyncio
async def test_health_check_reports_running_worker(client: AsyncClient, orchestrator):
    await orchestrator.worker.start()
    try:
        response = await client.get("/health")
    finally:
        await orchestrator.worker.stop()

    assert response.json()["worker"] == "running"


@pytest.mark.asyncio
async def test_version(client: AsyncClient):
    response = await client.get("/version")

    assert response.status_code == 200
    assert response.json() == {"version": "0.1.0", "schema_version": "v1"}


@pytest.mark.asyncio
async def test_process_time_header_is_set(client: AsyncClient):
    response = await client.get("/version")

    assert "x-process-time" in response.headers
