"""Privileged overrides: assignment, cancellation on behalf, settlement and audit history."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskhelper_service.logging import get_logger
from taskhelper_service.services.lifecycle import (
    apply_task_action,
    create_offered_booking,
    forbidden,
    override_meta,
    require_task,
)
from taskhelper_service.services.transitions import BIDDABLE_TASK_STATES, POSTED, ensure_task_state

if TYPE_CHECKING:
    from taskhelper_service.clients.notification_client import NotificationClient
    from taskhelper_service.services.marketplace_store import MarketplaceStore
    from taskhelper_service.services.task_manager import TaskManager
    from taskhelper_service.services.token_validator import Actor


class AdminManager:
    """
    Operations staff actions on tasks.

    Every method requires an ops or admin actor. Their lifecycle events carry
    the actor's role and ``meta.override``, which is how the audit timeline
    tells overrides apart from ordinary transitions.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        notifications: NotificationClient,
        task_manager: TaskManager,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._task_manager = task_manager

    @staticmethod
    def _require_privileged(actor: Actor) -> None:
        if not actor.privileged:
            raise forbidden("This action requires an operations role")

    async def assign(
        self,
        actor: Actor,
        task_id: str,
        tasker_id: str,
        reason: str | None,
        proposed_rate: dict[str, Any] | None,
        minimum_minutes: int,
    ) -> dict[str, Any]:
        """
        Offer a task to a chosen tasker.

        The task is not accepted here: a posted task opens for matching, the
        tasker becomes a candidate, and an offered booking waits for the
        tasker's own accept.
        """
        self._require_privileged(actor)

        with self._store.transaction():
            task = require_task(self._store, task_id)
            ensure_task_state(task["state"], BIDDABLE_TASK_STATES, "assign")
            meta = override_meta(actor, {"assigned_tasker_id": tasker_id})
            booking = create_offered_booking(
                self._store,
                task,
                tasker_id,
                actor,
                amount=proposed_rate["amount"] if proposed_rate else None,
                currency=proposed_rate["currency"] if proposed_rate else task["currency"],
                minimum_minutes=minimum_minutes,
                meta={**meta, "source": "admin_assign", "reason": reason},
            )
            if task["state"] == POSTED:
                apply_task_action(
                    self._store, task, "open_matching", actor, reason=reason, meta=meta
                )
            rank = len(self._store.list_candidates(task_id)) + 1
            if not self._store.is_candidate(task_id, tasker_id):
                self._store.upsert_candidate(task_id, tasker_id, rank, 0.0)

        get_logger(__name__).info(
            "Task assigned by operations",
            extra={"task_id": task_id, "tasker_id": tasker_id, "booking_id": booking["id"]},
        )
        await self._notifications.publish(
            "booking.offered",
            tasker_id,
            {"booking_id": booking["id"], "task_id": task_id, "assigned": True},
        )
        return {"task": task, "booking": booking}

    async def cancel_on_behalf_of_client(
        self,
        actor: Actor,
        task_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        self._require_privileged(actor)
        return await self._task_manager.cancel_task(actor, task_id, reason)

    async def add_candidates(
        self,
        actor: Actor,
        task_id: str,
        candidates: list[dict[str, Any]],
    ) -> dict[str, Any]:
        self._require_privileged(actor)
        return await self._task_manager.add_candidates(actor, task_id, candidates)

    async def settle(self, actor: Actor, task_id: str) -> dict[str, Any]:
        self._require_privileged(actor)
        return await self._task_manager.settle_task(actor, task_id)

    async def history(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Full audit timeline of a task and its bookings."""
        self._require_privileged(actor)
        require_task(self._store, task_id)
        return {"task_id": task_id, "items": self._store.list_task_timeline(task_id)}
