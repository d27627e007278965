"""Booking lifecycle: offers, arrival, status progression and cancellation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.services.lifecycle import (
    apply_booking_status,
    apply_task_action,
    booking_exists_error,
    create_offered_booking,
    forbidden,
    is_booking_party,
    not_found,
    override_meta,
    require_booking,
    require_task,
    require_task_owner,
)
from taskhelper_service.services.marketplace_store import now_iso
from taskhelper_service.services.query_builder import PageQuery
from taskhelper_service.services.transitions import (
    ACCEPTED,
    BOOKABLE_TASK_STATES,
    BOOKING_TO_TASK_ACTION,
    CANCELED,
    CLIENT,
    CONFIRMED,
    NON_CANCELABLE_BOOKING_STATUSES,
    OFFERED,
    TASKER,
    can_transition_booking,
    ensure_task_state,
    task_cancel_action_for,
)

if TYPE_CHECKING:
    from taskhelper_service.clients.notification_client import NotificationClient
    from taskhelper_service.services.marketplace_store import MarketplaceStore
    from taskhelper_service.services.token_validator import Actor


class BookingManager:
    """
    Drives bookings through the booking transition table.

    Booking changes that the task mirrors (start, completion, dispute, offer
    acceptance and rejection) update the task in the same transaction.
    """

    def __init__(self, store: MarketplaceStore, notifications: NotificationClient) -> None:
        self._store = store
        self._notifications = notifications

    def _visible_booking(self, actor: Actor, booking_id: str) -> dict[str, Any]:
        booking = require_booking(self._store, booking_id)
        if not actor.privileged and not is_booking_party(booking, actor):
            raise not_found("Booking", booking_id)
        return booking

    def _require_booking_tasker(self, booking: dict[str, Any], actor: Actor) -> None:
        if booking["tasker_id"] != actor.user_id:
            raise forbidden("Only the booked tasker can perform this action")

    def _reopen_task(self, task: dict[str, Any], actor: Actor, reason: str | None) -> None:
        # A withdrawn offer sends an accepted task back to matching.
        if task["state"] == ACCEPTED:
            apply_task_action(self._store, task, "reopen", actor, reason=reason)

    async def _notify_other_party(
        self,
        booking: dict[str, Any],
        actor: Actor,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        if actor.user_id == booking["tasker_id"]:
            recipients = [booking["client_id"]]
        elif actor.user_id == booking["client_id"]:
            recipients = [booking["tasker_id"]]
        else:
            recipients = [booking["client_id"], booking["tasker_id"]]
        for recipient in recipients:
            await self._notifications.publish(
                event, recipient, {"booking_id": booking["id"], **payload}
            )

    # ------------------------------------------------------------------
    # Creation and tasker responses
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        actor: Actor,
        task_id: str,
        tasker_id: str,
        proposed_rate: dict[str, Any] | None,
        minimum_minutes: int,
    ) -> dict[str, Any]:
        """Book a tasker directly, skipping the bidding round."""
        if actor.role != CLIENT:
            raise forbidden("Only clients can create bookings")

        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_task_owner(task, actor)
            if self._store.find_active_booking(task_id) is not None:
                raise booking_exists_error(task_id)
            ensure_task_state(task["state"], BOOKABLE_TASK_STATES, "book")
            booking = create_offered_booking(
                self._store,
                task,
                tasker_id,
                actor,
                amount=proposed_rate["amount"] if proposed_rate else None,
                currency=proposed_rate["currency"] if proposed_rate else task["currency"],
                minimum_minutes=minimum_minutes,
                meta={"source": "direct"},
            )
            apply_task_action(
                self._store, task, "assign", actor, meta={"booking_id": booking["id"]}
            )

        await self._notifications.publish(
            "booking.offered",
            tasker_id,
            {"booking_id": booking["id"], "task_id": task_id},
        )
        return require_booking(self._store, booking["id"])

    async def accept(self, actor: Actor, booking_id: str) -> dict[str, Any]:
        """The tasker accepts an offered booking; the task becomes accepted."""
        with self._store.transaction():
            booking = self._visible_booking(actor, booking_id)
            self._require_booking_tasker(booking, actor)
            task = require_task(self._store, booking["task_id"])
            apply_booking_status(self._store, booking, ACCEPTED, actor)
            apply_task_action(
                self._store, task, "assign", actor, meta={"booking_id": booking_id}
            )

        await self._notify_other_party(booking, actor, "booking.accepted", {})
        return require_booking(self._store, booking_id)

    async def reject(self, actor: Actor, booking_id: str, reason: str | None) -> dict[str, Any]:
        """The tasker turns down an offer; an accepted task returns to matching."""
        with self._store.transaction():
            booking = self._visible_booking(actor, booking_id)
            self._require_booking_tasker(booking, actor)
            task = require_task(self._store, booking["task_id"])
            if booking["status"] != OFFERED:
                raise ServiceError(
                    "INVALID_TRANSITION",
                    f"Cannot reject a booking in '{booking['status']}' status",
                    400,
                    {"from": booking["status"], "to": CANCELED},
                )
            apply_booking_status(
                self._store, booking, CANCELED, actor, reason=reason, meta={"rejected": True}
            )
            self._reopen_task(task, actor, reason)

        await self._notify_other_party(booking, actor, "booking.rejected", {"reason": reason})
        return require_booking(self._store, booking_id)

    async def mark_arrived(self, actor: Actor, booking_id: str) -> dict[str, Any]:
        """Record the tasker's arrival on a confirmed booking."""
        with self._store.transaction():
            booking = self._visible_booking(actor, booking_id)
            self._require_booking_tasker(booking, actor)
            if booking["status"] != CONFIRMED:
                raise ServiceError(
                    "INVALID_STATE",
                    "Arrival can only be recorded on a confirmed booking",
                    400,
                    {"status": booking["status"]},
                )
            if booking["arrived_at"] is not None:
                raise ServiceError(
                    "ALREADY_ARRIVED",
                    "Arrival was already recorded",
                    400,
                    {"arrived_at": booking["arrived_at"]},
                )
            timestamp = now_iso()
            self._store.update_booking(
                booking_id,
                {"arrived_at": timestamp, "updated_at": timestamp},
                expected_status=CONFIRMED,
            )

        await self._notify_other_party(booking, actor, "booking.arrived", {})
        return require_booking(self._store, booking_id)

    # ------------------------------------------------------------------
    # Generic progression and cancellation
    # ------------------------------------------------------------------

    async def update_status(
        self,
        actor: Actor,
        booking_id: str,
        new_status: str,
        meta: dict[str, Any],
    ) -> dict[str, Any]:
        """Apply any edge of the booking transition table and mirror it onto the task."""
        with self._store.transaction():
            booking = require_booking(self._store, booking_id)
            if not actor.privileged and not is_booking_party(booking, actor):
                raise forbidden("Only the booking's parties can change its status")
            task = require_task(self._store, booking["task_id"])
            from_status = booking["status"]
            event_meta = override_meta(actor, meta)

            apply_booking_status(self._store, booking, new_status, actor, meta=event_meta)

            task_action = BOOKING_TO_TASK_ACTION.get(new_status)
            if task_action is not None:
                apply_task_action(self._store, task, task_action, actor, meta=event_meta)
            elif new_status == ACCEPTED:
                apply_task_action(self._store, task, "assign", actor, meta=event_meta)
            elif new_status == CANCELED and from_status == OFFERED:
                self._reopen_task(task, actor, None)

        await self._notify_other_party(
            booking, actor, "booking.status_changed", {"from": from_status, "to": new_status}
        )
        return require_booking(self._store, booking_id)

    async def cancel(self, actor: Actor, booking_id: str, reason: str | None) -> dict[str, Any]:
        """A party cancels the booking; the task is canceled on that party's behalf."""
        if actor.role not in (CLIENT, TASKER):
            raise forbidden("Only clients and taskers can cancel bookings")

        with self._store.transaction():
            booking = self._visible_booking(actor, booking_id)
            if booking["status"] in NON_CANCELABLE_BOOKING_STATUSES:
                raise ServiceError(
                    "INVALID_STATE",
                    f"Cannot cancel a booking in '{booking['status']}' status",
                    400,
                    {"status": booking["status"]},
                )
            task = require_task(self._store, booking["task_id"])
            apply_booking_status(
                self._store,
                booking,
                CANCELED,
                actor,
                reason=reason,
                force=not can_transition_booking(booking["status"], CANCELED),
            )
            apply_task_action(
                self._store,
                task,
                task_cancel_action_for(actor.role),
                actor,
                reason=reason,
                meta={"booking_id": booking_id},
            )

        await self._notify_other_party(booking, actor, "booking.canceled", {"reason": reason})
        return require_booking(self._store, booking_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_booking(self, actor: Actor, booking_id: str) -> dict[str, Any]:
        return self._visible_booking(actor, booking_id)

    async def list_bookings(
        self,
        actor: Actor,
        status: str | None,
        cursor: str | None,
        limit: int,
    ) -> dict[str, Any]:
        query = PageQuery("bookings", cursor=cursor, limit=limit).where("status", status)
        if actor.role == CLIENT:
            query = query.where("client_id", actor.user_id)
        elif actor.role == TASKER:
            query = query.where("tasker_id", actor.user_id)
        items, next_cursor = self._store.fetch_page(query)
        return {"items": items, "next_cursor": next_cursor}

    async def list_events(self, actor: Actor, booking_id: str) -> dict[str, Any]:
        self._visible_booking(actor, booking_id)
        return {"booking_id": booking_id, "items": self._store.list_events("booking", booking_id)}
