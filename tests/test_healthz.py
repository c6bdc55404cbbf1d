from httpx import AsyncClient


async def test_health_check_success(async_client: AsyncClient):
    """Test health check endpoint returns correct format."""
    response = await async_client.get("/v1/healthz")

    assert response.status_code == 200

    data = response.json()
    assert data["ok"] is True
    assert "data" in data

    health_data = data["data"]
    assert health_data["ok"] is True
    assert health_data["version"] == "1.0.0"
    assert health_data["environment"] == "development"
    assert health_data["database"]["connected"] is True


async def test_health_check_reports_worker(async_client: AsyncClient, app):
    await app.state.orchestrator.start_task("generate_derivatives", project_id=1)

    response = await async_client.get("/v1/healthz")

    worker = response.json()["data"]["worker"]
    assert worker["running"] is False
    assert worker["worker_id"] == app.state.worker.worker_id
    assert worker["queue_depth"] == 1
    assert worker["stale_jobs_count"] == 0


async def test_health_check_response_structure(async_client: AsyncClient):
    """Test health check response envelope structure."""
    response = await async_client.get("/v1/healthz")

    data = response.json()

    # Check response envelope structure
    required_keys = ["ok", "data", "message", "request_id"]
    for key in required_keys:
        assert key in data

    # Check that request ID is present in headers
    assert "X-Request-ID" in response.headers
