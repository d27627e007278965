"""Health endpoint tests."""

from __future__ import annotations

import asyncio

import pytest

from tests.unit.routers.conftest import create_posted_task, create_task


@pytest.mark.unit
async def test_health_returns_ok_with_correct_schema(client):
    """GET /health returns 200 with correct schema and needs no token."""
    response = await client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ok"
    assert isinstance(data["uptime_seconds"], (int, float))
    assert data["started_at"].endswith("Z")
    assert data["total_tasks"] == 0
    assert data["tasks_by_state"] == {}


@pytest.mark.unit
async def test_health_uptime_increases_over_time(client):
    first = (await client.get("/health")).json()["uptime_seconds"]
    await asyncio.sleep(0.05)
    second = (await client.get("/health")).json()["uptime_seconds"]
    assert second > first


@pytest.mark.unit
async def test_health_task_counts_reflect_actual_data(client):
    await create_task(client)
    await create_task(client)
    await create_posted_task(client)

    data = (await client.get("/health")).json()
    assert data["total_tasks"] == 3
    assert data["tasks_by_state"] == {"draft": 2, "posted": 1}


@pytest.mark.unit
async def test_unknown_route_uses_error_envelope(client):
    response = await client.get("/nowhere")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.unit
async def test_wrong_method_is_405(client):
    response = await client.delete("/health")
    assert response.status_code == 405
    assert response.json()["error"]["code"] == "METHOD_NOT_ALLOWED"
