"""Disputes: opening, evidence collection and privileged resolution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.logging import get_logger
from taskhelper_service.services.lifecycle import (
    apply_booking_status,
    apply_task_action,
    forbidden,
    is_booking_party,
    not_found,
    override_meta,
    require_booking,
    require_task,
)
from taskhelper_service.services.marketplace_store import DuplicateDisputeError, new_id, now_iso
from taskhelper_service.services.query_builder import PageQuery
from taskhelper_service.services.transitions import (
    COMPLETED,
    DISPUTED,
    validate_booking_transition,
)

if TYPE_CHECKING:
    from taskhelper_service.clients.notification_client import NotificationClient
    from taskhelper_service.services.marketplace_store import MarketplaceStore
    from taskhelper_service.services.token_validator import Actor

DISPUTE_OPEN = "open"
DISPUTE_RESOLVED = "resolved"


def _dispute_exists(booking_id: str) -> ServiceError:
    return ServiceError(
        "DISPUTE_EXISTS",
        "A dispute is already open for this booking",
        409,
        {"booking_id": booking_id},
    )


class DisputeManager:
    """Opens, collects evidence for, and resolves booking disputes."""

    def __init__(self, store: MarketplaceStore, notifications: NotificationClient) -> None:
        self._store = store
        self._notifications = notifications

    def _visible_dispute(self, actor: Actor, dispute_id: str) -> dict[str, Any]:
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise not_found("Dispute", dispute_id)
        if not actor.privileged and not is_booking_party(dispute, actor):
            raise not_found("Dispute", dispute_id)
        return dispute

    async def open_dispute(
        self,
        actor: Actor,
        booking_id: str,
        reason: str,
        amount_in_question: int | None,
    ) -> dict[str, Any]:
        """
        Open a dispute against an in-progress or completed booking.

        The booking and its task both move to disputed.

        Raises:
            ServiceError: NOT_FOUND, DISPUTE_EXISTS, INVALID_TRANSITION
        """
        with self._store.transaction():
            booking = require_booking(self._store, booking_id)
            if not is_booking_party(booking, actor):
                raise not_found("Booking", booking_id)
            if self._store.get_dispute_for_booking(booking_id) is not None:
                raise _dispute_exists(booking_id)
            validate_booking_transition(booking["status"], DISPUTED)

            timestamp = now_iso()
            dispute_id = new_id()
            try:
                self._store.insert_dispute(
                    {
                        "id": dispute_id,
                        "booking_id": booking_id,
                        "opened_by": actor.user_id,
                        "reason": reason,
                        "amount_in_question": amount_in_question,
                        "currency": booking["agreed_rate_currency"],
                        "status": DISPUTE_OPEN,
                        "resolution": None,
                        "resolved_by": None,
                        "resolved_at": None,
                        "created_at": timestamp,
                        "updated_at": timestamp,
                    }
                )
            except DuplicateDisputeError as exc:
                raise _dispute_exists(booking_id) from exc

            meta = {"dispute_id": dispute_id}
            apply_booking_status(self._store, booking, DISPUTED, actor, reason=reason, meta=meta)
            task = require_task(self._store, booking["task_id"])
            apply_task_action(self._store, task, "dispute", actor, reason=reason, meta=meta)

        get_logger(__name__).info(
            "Dispute opened",
            extra={"dispute_id": dispute_id, "booking_id": booking_id},
        )
        other_party = (
            booking["tasker_id"] if actor.user_id == booking["client_id"] else booking["client_id"]
        )
        await self._notifications.publish(
            "dispute.opened",
            other_party,
            {"dispute_id": dispute_id, "booking_id": booking_id},
        )
        return self._visible_dispute(actor, dispute_id)

    async def add_evidence(self, actor: Actor, dispute_id: str, evidence: str) -> dict[str, Any]:
        """Append a party's evidence to an open dispute."""
        with self._store.transaction():
            dispute = self._visible_dispute(actor, dispute_id)
            if not is_booking_party(dispute, actor):
                raise forbidden("Only the disputing parties can add evidence")
            if dispute["status"] != DISPUTE_OPEN:
                raise ServiceError(
                    "INVALID_STATE",
                    "Evidence can only be added to an open dispute",
                    400,
                    {"status": dispute["status"]},
                )
            self._store.insert_evidence(dispute_id, actor.user_id, evidence)

        return self._visible_dispute(actor, dispute_id)

    async def get_dispute(self, actor: Actor, dispute_id: str) -> dict[str, Any]:
        return self._visible_dispute(actor, dispute_id)

    async def list_disputes(
        self,
        actor: Actor,
        status: str | None,
        cursor: str | None,
        limit: int,
    ) -> dict[str, Any]:
        if not actor.privileged:
            raise forbidden("Only operations staff can list disputes")
        query = PageQuery("disputes", cursor=cursor, limit=limit).where("status", status)
        items, next_cursor = self._store.fetch_page(query)
        return {"items": items, "next_cursor": next_cursor}

    async def resolve(
        self,
        actor: Actor,
        dispute_id: str,
        resolution: str,
        refund_amount: int | None,
    ) -> dict[str, Any]:
        """
        Close a dispute with a ruling.

        The booking is forced back to completed if it is still disputed, and
        the task moves from disputed to completed so settlement can proceed.
        """
        if not actor.privileged:
            raise forbidden("Only operations staff can resolve disputes")

        with self._store.transaction():
            dispute = self._visible_dispute(actor, dispute_id)
            if dispute["status"] != DISPUTE_OPEN:
                raise ServiceError(
                    "INVALID_STATE",
                    "Dispute is already resolved",
                    400,
                    {"status": dispute["status"]},
                )

            timestamp = now_iso()
            self._store.update_dispute(
                dispute_id,
                {
                    "status": DISPUTE_RESOLVED,
                    "resolution": {"resolution": resolution, "refund_amount": refund_amount},
                    "resolved_by": actor.user_id,
                    "resolved_at": timestamp,
                    "updated_at": timestamp,
                },
                expected_status=DISPUTE_OPEN,
            )

            meta = override_meta(actor, {"dispute_id": dispute_id})
            booking = require_booking(self._store, dispute["booking_id"])
            if booking["status"] == DISPUTED:
                apply_booking_status(
                    self._store,
                    booking,
                    COMPLETED,
                    actor,
                    reason=resolution,
                    meta=meta,
                    force=True,
                )
            task = require_task(self._store, booking["task_id"])
            if task["state"] == DISPUTED:
                apply_task_action(
                    self._store, task, "resolve_dispute", actor, reason=resolution, meta=meta
                )

        get_logger(__name__).info(
            "Dispute resolved",
            extra={"dispute_id": dispute_id, "resolved_by": actor.user_id},
        )
        for recipient in (dispute["client_id"], dispute["tasker_id"]):
            await self._notifications.publish(
                "dispute.resolved",
                recipient,
                {"dispute_id": dispute_id, "refund_amount": refund_amount},
            )
        return self._visible_dispute(actor, dispute_id)
