"""
Shared write helpers used by every manager.

Each helper runs inside the caller's transaction: it validates the move
against the transition tables, writes the new state and appends the
matching lifecycle event.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.logging import get_logger
from taskhelper_service.services.marketplace_store import DuplicateBookingError, new_id, now_iso
from taskhelper_service.services.transitions import (
    COMPLETED,
    IN_PROGRESS,
    OFFERED,
    resolve_task_transition,
    validate_booking_transition,
)

if TYPE_CHECKING:
    from taskhelper_service.services.marketplace_store import MarketplaceStore
    from taskhelper_service.services.token_validator import Actor


def not_found(kind: str, identifier: str) -> ServiceError:
    return ServiceError("NOT_FOUND", f"{kind} not found", 404, {"id": identifier})


def forbidden(message: str) -> ServiceError:
    return ServiceError("FORBIDDEN", message, 403, {})


def require_task(store: MarketplaceStore, task_id: str) -> dict[str, Any]:
    task = store.get_task(task_id)
    if task is None:
        raise not_found("Task", task_id)
    return task


def require_booking(store: MarketplaceStore, booking_id: str) -> dict[str, Any]:
    booking = store.get_booking(booking_id)
    if booking is None:
        raise not_found("Booking", booking_id)
    return booking


def require_task_owner(task: dict[str, Any], actor: Actor) -> None:
    if task["client_id"] != actor.user_id:
        raise forbidden("Only the task owner can perform this action")


def is_booking_party(booking: dict[str, Any], actor: Actor) -> bool:
    return actor.user_id in (booking["client_id"], booking["tasker_id"])


def override_meta(actor: Actor, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    """Tag a privileged actor's event metadata as an override."""
    merged = dict(meta) if meta is not None else {}
    if actor.privileged:
        merged["override"] = True
    return merged


def apply_task_action(
    store: MarketplaceStore,
    task: dict[str, Any],
    action: str,
    actor: Actor,
    *,
    reason: str | None = None,
    meta: dict[str, Any] | None = None,
) -> str:
    """Move a task along one action edge and log it. Returns the new state."""
    from_state = task["state"]
    target = resolve_task_transition(from_state, action, actor.role)
    timestamp = now_iso()

    updated = store.update_task(
        task["id"],
        {"state": target, "updated_at": timestamp},
        expected_state=from_state,
    )
    if updated != 1:
        raise ServiceError(
            "CONFLICT",
            "Task state changed concurrently",
            409,
            {"task_id": task["id"]},
        )

    store.append_event(
        "task",
        task["id"],
        from_state,
        target,
        actor.user_id,
        actor.role,
        reason=reason,
        meta={"action": action, **(meta or {})},
    )
    task["state"] = target
    task["updated_at"] = timestamp

    get_logger(__name__).info(
        "Task transition",
        extra={
            "task_id": task["id"],
            "action": action,
            "from_state": from_state,
            "to_state": target,
            "actor_role": actor.role,
        },
    )
    return target


def apply_booking_status(
    store: MarketplaceStore,
    booking: dict[str, Any],
    new_status: str,
    actor: Actor,
    *,
    reason: str | None = None,
    meta: dict[str, Any] | None = None,
    force: bool = False,
) -> dict[str, Any]:
    """
    Move a booking to new_status and log it.

    ``force`` bypasses the transition table; it is reserved for cascades and
    privileged overrides, which record the forced move in the event.
    """
    from_status = booking["status"]
    if not force:
        validate_booking_transition(from_status, new_status)

    timestamp = now_iso()
    updates: dict[str, Any] = {"status": new_status, "updated_at": timestamp}
    if new_status == IN_PROGRESS and booking.get("started_at") is None:
        updates["started_at"] = timestamp
    if new_status == COMPLETED and booking.get("completed_at") is None:
        updates["completed_at"] = timestamp

    updated = store.update_booking(booking["id"], updates, expected_status=from_status)
    if updated != 1:
        raise ServiceError(
            "CONFLICT",
            "Booking status changed concurrently",
            409,
            {"booking_id": booking["id"]},
        )

    event_meta = dict(meta or {})
    if force:
        event_meta["forced"] = True
    store.append_event(
        "booking",
        booking["id"],
        from_status,
        new_status,
        actor.user_id,
        actor.role,
        reason=reason,
        meta=event_meta,
    )
    booking.update(updates)

    get_logger(__name__).info(
        "Booking transition",
        extra={
            "booking_id": booking["id"],
            "from_status": from_status,
            "to_status": new_status,
            "actor_role": actor.role,
            "forced": force,
        },
    )
    return booking


def booking_exists_error(task_id: str) -> ServiceError:
    return ServiceError(
        "BOOKING_EXISTS",
        "Task already has an active booking",
        409,
        {"task_id": task_id},
    )


def create_offered_booking(
    store: MarketplaceStore,
    task: dict[str, Any],
    tasker_id: str,
    actor: Actor,
    *,
    amount: int | None,
    currency: str,
    minimum_minutes: int,
    bid_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Insert an ``offered`` booking, enforcing one active booking per task."""
    task_id = task["id"]
    if store.find_active_booking(task_id) is not None:
        raise booking_exists_error(task_id)

    timestamp = now_iso()
    booking: dict[str, Any] = {
        "id": new_id(),
        "task_id": task_id,
        "client_id": task["client_id"],
        "tasker_id": tasker_id,
        "status": OFFERED,
        "agreed_rate_amount": amount,
        "agreed_rate_currency": currency,
        "agreed_minimum_minutes": minimum_minutes,
        "bid_id": bid_id,
        "arrived_at": None,
        "started_at": None,
        "completed_at": None,
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    try:
        store.insert_booking(booking)
    except DuplicateBookingError as exc:
        raise booking_exists_error(task_id) from exc

    store.append_event(
        "booking",
        booking["id"],
        None,
        OFFERED,
        actor.user_id,
        actor.role,
        meta=meta,
    )
    return booking
