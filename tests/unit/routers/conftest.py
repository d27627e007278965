"""Router test fixtures with an in-memory Redis double and mocked notifications."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from taskhelper_service.app import create_app
from taskhelper_service.config import clear_settings_cache
from taskhelper_service.core.lifespan import lifespan
from taskhelper_service.core.state import get_app_state, reset_app_state
from taskhelper_service.services.idempotency import IdempotencyCache
from tests.helpers import TEST_JWT_SECRET, FakeRedis, auth_headers

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed user IDs
# ---------------------------------------------------------------------------
CLIENT_ID = "u-client-amira"
OTHER_CLIENT_ID = "u-client-karim"
TASKER_ID = "u-tasker-omar"
TASKER_2_ID = "u-tasker-laila"
OPS_ID = "u-ops-nour"
ADMIN_ID = "u-admin-sami"


def client_headers(user_id: str = CLIENT_ID) -> dict[str, str]:
    return auth_headers(user_id, "client")


def tasker_headers(user_id: str = TASKER_ID) -> dict[str, str]:
    return auth_headers(user_id, "tasker")


def ops_headers(user_id: str = OPS_ID) -> dict[str, str]:
    return auth_headers(user_id, "ops")


def admin_headers(user_id: str = ADMIN_ID) -> dict[str, str]:
    return auth_headers(user_id, "admin")


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database, fake Redis and mocked notifications."""
    db_path = tmp_path / "test.db"
    log_dir = tmp_path / "logs"
    config_content = f"""\
service:
  name: "taskhelper"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8080
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_dir}"
database:
  path: "{db_path}"
auth:
  jwt_secret: "{TEST_JWT_SECRET}"
  algorithms: ["HS256"]
cache:
  redis_url: null
  idempotency_ttl_seconds: 86400
negotiation:
  rate_limit_backend: "memory"
  max_messages: 30
  window_seconds: 60
  max_text_length: 2000
notifications:
  base_url: null
  events_path: "/events"
  timeout_seconds: 5
pagination:
  default_limit: 20
  max_limit: 100
request:
  max_body_size: 1048576
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Idempotency replay against an in-process Redis double
        state.idempotency_cache = IdempotencyCache(client=FakeRedis(), ttl_seconds=86400)

        # Managers share the one notification client; patching it reaches all of them
        assert state.notification_client is not None
        mock_publish = AsyncMock(return_value=True)
        state.notification_client.publish = mock_publish  # type: ignore[method-assign]

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def published(_app: Any) -> AsyncMock:
    """The mocked NotificationClient.publish, for asserting on sent events."""
    state = get_app_state()
    assert state.notification_client is not None
    return state.notification_client.publish  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Lifecycle helper functions
# ---------------------------------------------------------------------------
def task_body(**overrides: Any) -> dict[str, Any]:
    """A valid POST /tasks body."""
    body: dict[str, Any] = {
        "category": "cleaning",
        "subcategory": "deep_clean",
        "description": "Deep clean of a two-bedroom apartment",
        "location": {
            "address": "12 Tahrir St",
            "point": {"lat": 30.0444, "lng": 31.2357},
            "city": "Cairo",
            "district": "Downtown",
        },
        "schedule": {"starts_at": "2026-11-01T09:00:00Z", "flexibility_minutes": 30},
        "pricing": {
            "model": "hourly",
            "currency": "EGP",
            "est_min_amount": 200,
            "est_max_amount": 400,
            "est_minutes": 180,
        },
        "structured_inputs": {"rooms": 2},
        "bid_mode": "open_for_bids",
    }
    body.update(overrides)
    return body


async def create_task(client: AsyncClient, client_id: str = CLIENT_ID, **overrides: Any) -> Any:
    """Create a draft task via POST /tasks and return the response."""
    return await client.post(
        "/tasks", json=task_body(**overrides), headers=client_headers(client_id)
    )


async def create_posted_task(
    client: AsyncClient,
    client_id: str = CLIENT_ID,
    **overrides: Any,
) -> dict[str, Any]:
    """Create and post a task; return the posted task."""
    created = await create_task(client, client_id, **overrides)
    assert created.status_code == 201, created.text
    task_id = created.json()["id"]
    posted = await client.post(f"/tasks/{task_id}/post", headers=client_headers(client_id))
    assert posted.status_code == 200, posted.text
    return posted.json()


async def add_candidates(client: AsyncClient, task_id: str, *tasker_ids: str) -> Any:
    """Record matching candidates via the ops endpoint."""
    candidates = [
        {"tasker_id": tasker_id, "rank": rank, "score": 1.0 / rank}
        for rank, tasker_id in enumerate(tasker_ids, start=1)
    ]
    return await client.post(
        f"/admin/tasks/{task_id}/candidates",
        json={"candidates": candidates},
        headers=ops_headers(),
    )


async def submit_bid(
    client: AsyncClient,
    task_id: str,
    tasker_id: str = TASKER_ID,
    *,
    amount: int = 300,
    minimum_minutes: int = 120,
) -> Any:
    """Submit a bid via POST /bids and return the response."""
    return await client.post(
        "/bids",
        json={
            "task_id": task_id,
            "amount": amount,
            "currency": "EGP",
            "minimum_minutes": minimum_minutes,
            "message": "Available in the morning",
        },
        headers=tasker_headers(tasker_id),
    )


async def accept_bid(client: AsyncClient, bid_id: str, client_id: str = CLIENT_ID) -> Any:
    """Accept a bid via POST /bids/{bid_id}/accept."""
    return await client.post(f"/bids/{bid_id}/accept", headers=client_headers(client_id))


async def set_booking_status(
    client: AsyncClient,
    booking_id: str,
    status: str,
    headers: dict[str, str],
    meta: dict[str, Any] | None = None,
) -> Any:
    """Apply a generic status transition via POST /bookings/{booking_id}/status."""
    return await client.post(
        f"/bookings/{booking_id}/status",
        json={"status": status, "meta": meta or {}},
        headers=headers,
    )


async def setup_offered_booking(client: AsyncClient) -> tuple[str, str, str]:
    """
    Post a task, bid on it and accept the bid.

    Returns (task_id, bid_id, booking_id) with the booking offered and the
    task accepted.
    """
    task = await create_posted_task(client)
    bid_resp = await submit_bid(client, task["id"])
    assert bid_resp.status_code == 201, bid_resp.text
    bid_id = bid_resp.json()["id"]
    accepted = await accept_bid(client, bid_id)
    assert accepted.status_code == 201, accepted.text
    return task["id"], bid_id, accepted.json()["booking"]["id"]


async def setup_in_progress_booking(client: AsyncClient) -> tuple[str, str]:
    """Drive a booking through accept, confirm and start. Returns (task_id, booking_id)."""
    task_id, _bid_id, booking_id = await setup_offered_booking(client)
    accepted = await client.post(f"/bookings/{booking_id}/accept", headers=tasker_headers())
    assert accepted.status_code == 200, accepted.text
    confirmed = await set_booking_status(client, booking_id, "confirmed", client_headers())
    assert confirmed.status_code == 200, confirmed.text
    started = await set_booking_status(client, booking_id, "in_progress", tasker_headers())
    assert started.status_code == 200, started.text
    return task_id, booking_id


async def setup_completed_booking(client: AsyncClient) -> tuple[str, str]:
    """Drive a booking to completed. Returns (task_id, booking_id)."""
    task_id, booking_id = await setup_in_progress_booking(client)
    completed = await set_booking_status(client, booking_id, "completed", tasker_headers())
    assert completed.status_code == 200, completed.text
    return task_id, booking_id


async def get_task(client: AsyncClient, task_id: str) -> dict[str, Any]:
    """Fetch a task as the ops user, who may see everything."""
    response = await client.get(f"/tasks/{task_id}", headers=ops_headers())
    assert response.status_code == 200, response.text
    return response.json()
