"""Booking lifecycle endpoint tests."""

from __future__ import annotations

import pytest

from tests.unit.routers.conftest import (
    CLIENT_ID,
    OTHER_CLIENT_ID,
    TASKER_2_ID,
    TASKER_ID,
    client_headers,
    create_posted_task,
    create_task,
    get_task,
    ops_headers,
    set_booking_status,
    setup_completed_booking,
    setup_in_progress_booking,
    setup_offered_booking,
    tasker_headers,
)


async def _direct_booking(client, task_id, tasker_id=TASKER_ID, **body):
    payload = {"task_id": task_id, "tasker_id": tasker_id, **body}
    return await client.post("/bookings", json=payload, headers=client_headers())


@pytest.mark.unit
class TestCreateBooking:
    """POST /bookings"""

    async def test_direct_booking_offers_and_accepts_task(self, client, published):
        task = await create_posted_task(client)
        response = await _direct_booking(
            client,
            task["id"],
            proposed_rate={"amount": 450, "currency": "EGP"},
            minimum_minutes=180,
        )
        assert response.status_code == 201

        booking = response.json()
        assert booking["status"] == "offered"
        assert booking["client_id"] == CLIENT_ID
        assert booking["agreed_rate_amount"] == 450
        assert booking["agreed_minimum_minutes"] == 180
        assert booking["task_state"] == "accepted"
        published.assert_any_await(
            "booking.offered", TASKER_ID, {"booking_id": booking["id"], "task_id": task["id"]}
        )

    async def test_direct_booking_from_draft(self, client):
        task_id = (await create_task(client)).json()["id"]
        response = await _direct_booking(client, task_id)
        assert response.status_code == 201

    async def test_booking_without_rate_leaves_amount_open(self, client):
        task = await create_posted_task(client)
        response = await _direct_booking(client, task["id"])
        assert response.status_code == 201

        booking = response.json()
        assert booking["agreed_rate_amount"] is None
        assert booking["agreed_rate_currency"] == "EGP"
        assert booking["agreed_minimum_minutes"] == 60

    async def test_second_active_booking_is_rejected(self, client):
        task = await create_posted_task(client)
        await _direct_booking(client, task["id"])

        response = await _direct_booking(client, task["id"], TASKER_2_ID)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "BOOKING_EXISTS"

    async def test_tasker_cannot_create_booking(self, client):
        task = await create_posted_task(client)
        response = await client.post(
            "/bookings",
            json={"task_id": task["id"], "tasker_id": TASKER_ID},
            headers=tasker_headers(),
        )
        assert response.status_code == 403

    async def test_other_client_cannot_book_task(self, client):
        task = await create_posted_task(client)
        response = await client.post(
            "/bookings",
            json={"task_id": task["id"], "tasker_id": TASKER_ID},
            headers=client_headers(OTHER_CLIENT_ID),
        )
        assert response.status_code == 403


@pytest.mark.unit
class TestTaskerResponse:
    """POST /bookings/{booking_id}/accept and /reject"""

    async def test_tasker_accepts_offer(self, client, published):
        task_id, _bid_id, booking_id = await setup_offered_booking(client)

        response = await client.post(f"/bookings/{booking_id}/accept", headers=tasker_headers())
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"
        assert (await get_task(client, task_id))["state"] == "accepted"
        published.assert_any_await("booking.accepted", CLIENT_ID, {"booking_id": booking_id})

    async def test_only_booked_tasker_can_accept(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await client.post(f"/bookings/{booking_id}/accept", headers=client_headers())
        assert response.status_code == 403

    async def test_outsider_sees_not_found(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await client.post(
            f"/bookings/{booking_id}/accept", headers=tasker_headers(TASKER_2_ID)
        )
        assert response.status_code == 404

    async def test_reject_reopens_task_for_matching(self, client):
        task_id, _bid_id, booking_id = await setup_offered_booking(client)

        response = await client.post(
            f"/bookings/{booking_id}/reject",
            json={"reason": "Not available"},
            headers=tasker_headers(),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "canceled"
        assert (await get_task(client, task_id))["state"] == "matching"

    async def test_rejected_task_can_be_booked_again(self, client):
        task_id, _bid_id, booking_id = await setup_offered_booking(client)
        await client.post(f"/bookings/{booking_id}/reject", headers=tasker_headers())

        response = await _direct_booking(client, task_id, TASKER_2_ID)
        assert response.status_code == 201
        assert response.json()["tasker_id"] == TASKER_2_ID

    async def test_cannot_reject_accepted_booking(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        await client.post(f"/bookings/{booking_id}/accept", headers=tasker_headers())

        response = await client.post(f"/bookings/{booking_id}/reject", headers=tasker_headers())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"


@pytest.mark.unit
class TestStatusProgression:
    """POST /bookings/{booking_id}/status"""

    async def test_full_progression_mirrors_task(self, client):
        task_id, booking_id = await setup_in_progress_booking(client)

        booking = (await client.get(f"/bookings/{booking_id}", headers=client_headers())).json()
        assert booking["status"] == "in_progress"
        assert booking["started_at"] is not None
        assert (await get_task(client, task_id))["state"] == "in_progress"

        completed = await set_booking_status(client, booking_id, "completed", tasker_headers())
        assert completed.status_code == 200
        assert completed.json()["completed_at"] is not None
        assert (await get_task(client, task_id))["state"] == "completed"

    async def test_skipping_a_step_is_invalid_transition(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)

        response = await set_booking_status(client, booking_id, "in_progress", tasker_headers())
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_TRANSITION"
        assert error["details"] == {
            "from": "offered",
            "to": "in_progress",
            "allowed": ["accepted", "canceled"],
        }

    async def test_completed_booking_cannot_restart(self, client):
        _task_id, booking_id = await setup_completed_booking(client)
        response = await set_booking_status(client, booking_id, "in_progress", tasker_headers())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"

    async def test_unknown_status_is_validation_error(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await set_booking_status(client, booking_id, "paused", tasker_headers())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_outsider_cannot_change_status(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await set_booking_status(
            client, booking_id, "accepted", tasker_headers(TASKER_2_ID)
        )
        assert response.status_code == 403

    async def test_ops_change_is_marked_override(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await set_booking_status(
            client, booking_id, "accepted", ops_headers(), meta={"note": "phone confirmed"}
        )
        assert response.status_code == 200

        events = (
            await client.get(f"/bookings/{booking_id}/events", headers=ops_headers())
        ).json()["items"]
        last = events[-1]
        assert last["actor_role"] == "ops"
        assert last["meta"] == {"note": "phone confirmed", "override": True}

    async def test_meta_is_recorded_on_event(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        await set_booking_status(
            client, booking_id, "accepted", tasker_headers(), meta={"eta_minutes": 20}
        )
        events = (
            await client.get(f"/bookings/{booking_id}/events", headers=tasker_headers())
        ).json()["items"]
        assert [e["to_state"] for e in events] == ["offered", "accepted"]
        assert events[-1]["meta"] == {"eta_minutes": 20}


@pytest.mark.unit
class TestArrival:
    """POST /bookings/{booking_id}/arrived"""

    async def test_arrival_on_confirmed_booking(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        await client.post(f"/bookings/{booking_id}/accept", headers=tasker_headers())
        await set_booking_status(client, booking_id, "confirmed", client_headers())

        response = await client.post(f"/bookings/{booking_id}/arrived", headers=tasker_headers())
        assert response.status_code == 200
        assert response.json()["arrived_at"] is not None
        assert response.json()["status"] == "confirmed"

        again = await client.post(f"/bookings/{booking_id}/arrived", headers=tasker_headers())
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "ALREADY_ARRIVED"

    async def test_arrival_before_confirmation_is_invalid(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await client.post(f"/bookings/{booking_id}/arrived", headers=tasker_headers())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_STATE"


@pytest.mark.unit
class TestCancelBooking:
    """POST /bookings/{booking_id}/cancel"""

    async def test_tasker_cancel_cancels_task_by_tasker(self, client, published):
        task_id, _bid_id, booking_id = await setup_offered_booking(client)
        await client.post(f"/bookings/{booking_id}/accept", headers=tasker_headers())

        response = await client.post(
            f"/bookings/{booking_id}/cancel",
            json={"reason": "Sick"},
            headers=tasker_headers(),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "canceled"
        assert (await get_task(client, task_id))["state"] == "canceled_by_tasker"
        published.assert_any_await(
            "booking.canceled", CLIENT_ID, {"booking_id": booking_id, "reason": "Sick"}
        )

    async def test_client_cancel_in_progress_is_forced(self, client):
        task_id, booking_id = await setup_in_progress_booking(client)

        response = await client.post(f"/bookings/{booking_id}/cancel", headers=client_headers())
        assert response.status_code == 200
        assert (await get_task(client, task_id))["state"] == "canceled_by_client"

        events = (
            await client.get(f"/bookings/{booking_id}/events", headers=client_headers())
        ).json()["items"]
        assert events[-1]["meta"]["forced"] is True

    async def test_completed_booking_cannot_be_canceled(self, client):
        _task_id, booking_id = await setup_completed_booking(client)
        response = await client.post(f"/bookings/{booking_id}/cancel", headers=client_headers())
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_STATE"

    async def test_ops_must_use_task_cancel(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await client.post(f"/bookings/{booking_id}/cancel", headers=ops_headers())
        assert response.status_code == 403


@pytest.mark.unit
class TestReadBookings:
    """GET /bookings, /bookings/{booking_id} and /bookings/{booking_id}/events"""

    async def test_parties_list_their_bookings(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)

        for headers in (client_headers(), tasker_headers(), ops_headers()):
            response = await client.get("/bookings", headers=headers)
            assert [b["id"] for b in response.json()["items"]] == [booking_id]

        for headers in (client_headers(OTHER_CLIENT_ID), tasker_headers(TASKER_2_ID)):
            response = await client.get("/bookings", headers=headers)
            assert response.json()["items"] == []

    async def test_status_filter(self, client):
        await setup_offered_booking(client)
        offered = await client.get("/bookings?status=offered", headers=client_headers())
        accepted = await client.get("/bookings?status=accepted", headers=client_headers())
        assert len(offered.json()["items"]) == 1
        assert accepted.json()["items"] == []

    async def test_get_booking_hides_from_outsiders(self, client):
        _task_id, _bid_id, booking_id = await setup_offered_booking(client)
        response = await client.get(
            f"/bookings/{booking_id}", headers=client_headers(OTHER_CLIENT_ID)
        )
        assert response.status_code == 404

    async def test_unknown_booking_is_not_found(self, client):
        response = await client.get("/bookings/nope", headers=client_headers())
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
