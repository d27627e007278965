"""Task lifecycle management: creation, posting, candidates, cancellation and settlement."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.logging import get_logger
from taskhelper_service.services.lifecycle import (
    apply_booking_status,
    apply_task_action,
    create_offered_booking,
    forbidden,
    override_meta,
    require_task,
    require_task_owner,
)
from taskhelper_service.services.marketplace_store import new_id, now_iso
from taskhelper_service.services.query_builder import PageQuery
from taskhelper_service.services.transitions import (
    BIDDABLE_TASK_STATES,
    BID_PENDING,
    CANCELED,
    CLIENT,
    DRAFT,
    EDITABLE_TASK_STATES,
    MATCHING,
    POSTED,
    TASKER,
    ensure_task_state,
)

if TYPE_CHECKING:
    from taskhelper_service.clients.notification_client import NotificationClient
    from taskhelper_service.services.marketplace_store import MarketplaceStore
    from taskhelper_service.services.token_validator import Actor


class TaskManager:
    """
    Manages the task lifecycle.

    Every state change goes through the transition table and is written
    together with its lifecycle event in one transaction. Notifications are
    published after the transaction commits.
    """

    def __init__(self, store: MarketplaceStore, notifications: NotificationClient) -> None:
        self._store = store
        self._notifications = notifications

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    def can_view(self, task: dict[str, Any], actor: Actor) -> bool:
        """Owner, privileged actors, and taskers the task is open or linked to."""
        if actor.privileged or task["client_id"] == actor.user_id:
            return True
        if actor.role != TASKER:
            return False
        if task["state"] in BIDDABLE_TASK_STATES:
            return True
        return (
            self._store.is_candidate(task["id"], actor.user_id)
            or self._store.get_bid_for_pair(task["id"], actor.user_id) is not None
            or self._store.has_booking_for_tasker(task["id"], actor.user_id)
        )

    def _visible_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        task = require_task(self._store, task_id)
        if not self.can_view(task, actor):
            raise forbidden("You do not have access to this task")
        return task

    # ------------------------------------------------------------------
    # Client operations
    # ------------------------------------------------------------------

    async def create_task(self, actor: Actor, fields: dict[str, Any]) -> dict[str, Any]:
        """Create a task in draft state."""
        if actor.role != CLIENT:
            raise forbidden("Only clients can create tasks")

        location = fields["location"]
        schedule = fields["schedule"]
        pricing = fields["pricing"]
        timestamp = now_iso()
        task: dict[str, Any] = {
            "id": new_id(),
            "client_id": actor.user_id,
            "category": fields["category"],
            "subcategory": fields.get("subcategory"),
            "description": fields["description"],
            "address": location["address"],
            "city": location["city"],
            "district": location.get("district"),
            "lat": location["point"]["lat"],
            "lng": location["point"]["lng"],
            "starts_at": schedule["starts_at"],
            "flexibility_minutes": schedule["flexibility_minutes"],
            "pricing_model": pricing.get("model"),
            "currency": pricing["currency"],
            "est_min_amount": pricing.get("est_min_amount"),
            "est_max_amount": pricing.get("est_max_amount"),
            "est_minutes": pricing.get("est_minutes"),
            "structured_inputs": fields["structured_inputs"],
            "bid_mode": fields["bid_mode"],
            "state": DRAFT,
            "created_at": timestamp,
            "updated_at": timestamp,
        }

        with self._store.transaction():
            self._store.insert_task(task)
            self._store.append_event("task", task["id"], None, DRAFT, actor.user_id, actor.role)

        get_logger(__name__).info(
            "Task created",
            extra={"task_id": task["id"], "client_id": actor.user_id},
        )
        return require_task(self._store, task["id"])

    async def post_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Publish a draft task."""
        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_task_owner(task, actor)
            apply_task_action(self._store, task, "post", actor)

        await self._notifications.publish(
            "task.posted",
            task["client_id"],
            {"task_id": task_id, "category": task["category"], "city": task["city"]},
        )
        return task

    async def update_task(
        self,
        actor: Actor,
        task_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """Edit a task that has not yet been matched."""
        updates: dict[str, Any] = {}
        if fields.get("description") is not None:
            updates["description"] = fields["description"]
        if fields.get("schedule") is not None:
            updates["starts_at"] = fields["schedule"]["starts_at"]
            updates["flexibility_minutes"] = fields["schedule"]["flexibility_minutes"]
        if fields.get("structured_inputs") is not None:
            updates["structured_inputs"] = fields["structured_inputs"]
        if fields.get("bid_mode") is not None:
            updates["bid_mode"] = fields["bid_mode"]

        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_task_owner(task, actor)
            ensure_task_state(task["state"], EDITABLE_TASK_STATES, "update")
            if updates:
                updates["updated_at"] = now_iso()
                self._store.update_task(task_id, updates, expected_state=task["state"])

        return require_task(self._store, task_id)

    async def cancel_task(
        self,
        actor: Actor,
        task_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """
        Cancel a task on behalf of its client and cancel its open bookings.

        Privileged actors may cancel any task; their events are marked as
        overrides.
        """
        with self._store.transaction():
            task = require_task(self._store, task_id)
            if not actor.privileged:
                require_task_owner(task, actor)
            meta = override_meta(actor)
            apply_task_action(
                self._store, task, "cancel_by_client", actor, reason=reason, meta=meta
            )
            open_bookings = self._store.list_open_bookings(task_id)
            for booking in open_bookings:
                apply_booking_status(
                    self._store,
                    booking,
                    CANCELED,
                    actor,
                    reason=reason,
                    meta={**meta, "cascade": "task_canceled"},
                    force=True,
                )

        for booking in open_bookings:
            await self._notifications.publish(
                "booking.canceled",
                booking["tasker_id"],
                {"booking_id": booking["id"], "task_id": task_id, "reason": reason},
            )
        return task

    async def get_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        return self._visible_task(actor, task_id)

    async def list_tasks(
        self,
        actor: Actor,
        state: str | None,
        cursor: str | None,
        limit: int,
    ) -> dict[str, Any]:
        """
        List tasks visible to the actor.

        Clients see their own tasks, taskers see open tasks, privileged
        actors see everything.
        """
        query = PageQuery("tasks", cursor=cursor, limit=limit).where("state", state)
        if actor.role == CLIENT:
            query = query.where("client_id", actor.user_id)
        elif actor.role == TASKER:
            query = query.where_in("state", sorted(BIDDABLE_TASK_STATES))

        items, next_cursor = self._store.fetch_page(query)
        return {"items": items, "next_cursor": next_cursor}

    async def history(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Return the merged task and booking timeline."""
        self._visible_task(actor, task_id)
        return {"task_id": task_id, "items": self._store.list_task_timeline(task_id)}

    # ------------------------------------------------------------------
    # Tasker responses to an offer
    # ------------------------------------------------------------------

    async def accept_by_tasker(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """A candidate tasker takes a matching task directly."""
        if actor.role != TASKER:
            raise forbidden("Only taskers can accept tasks")

        with self._store.transaction():
            task = require_task(self._store, task_id)
            if not self._store.is_candidate(task_id, actor.user_id):
                raise ServiceError(
                    "NOT_OFFERED",
                    "This task was not offered to you",
                    403,
                    {"task_id": task_id},
                )
            ensure_task_state(task["state"], frozenset({MATCHING}), "accept")

            # A pending bid from this tasker sets the terms; otherwise the rate stays open.
            bid = self._store.get_bid_for_pair(task_id, actor.user_id)
            if bid is not None and bid["status"] == BID_PENDING:
                amount, currency, minimum = bid["amount"], bid["currency"], bid["minimum_minutes"]
            else:
                amount, currency, minimum = None, task["currency"], 60
            booking = create_offered_booking(
                self._store,
                task,
                actor.user_id,
                actor,
                amount=amount,
                currency=currency,
                minimum_minutes=minimum,
                meta={"source": "candidate_accept"},
            )
            apply_task_action(self._store, task, "accept_offer", actor)

        await self._notifications.publish(
            "task.accepted",
            task["client_id"],
            {"task_id": task_id, "booking_id": booking["id"], "tasker_id": actor.user_id},
        )
        return {"task": task, "booking": booking}

    async def decline_by_tasker(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Remove the tasker from the candidate list. Repeating is harmless."""
        if actor.role != TASKER:
            raise forbidden("Only taskers can decline tasks")

        with self._store.transaction():
            require_task(self._store, task_id)
            removed = self._store.remove_candidate(task_id, actor.user_id)

        return {"task_id": task_id, "tasker_id": actor.user_id, "removed": removed > 0}

    # ------------------------------------------------------------------
    # Operations endpoints
    # ------------------------------------------------------------------

    async def add_candidates(
        self,
        actor: Actor,
        task_id: str,
        candidates: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Record matching results and open the task for matching."""
        if not actor.privileged:
            raise forbidden("Only operations staff can add candidates")

        with self._store.transaction():
            task = require_task(self._store, task_id)
            ensure_task_state(task["state"], BIDDABLE_TASK_STATES, "add candidates to")
            if task["state"] == POSTED:
                apply_task_action(
                    self._store,
                    task,
                    "open_matching",
                    actor,
                    meta={"candidates": len(candidates)},
                )
            for candidate in candidates:
                self._store.upsert_candidate(
                    task_id,
                    candidate["tasker_id"],
                    candidate["rank"],
                    candidate["score"],
                )

        for candidate in candidates:
            await self._notifications.publish(
                "task.offered",
                candidate["tasker_id"],
                {"task_id": task_id, "rank": candidate["rank"]},
            )
        return {"task": task, "candidates": self._store.list_candidates(task_id)}

    async def settle_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Mark a completed task settled after payment capture."""
        with self._store.transaction():
            task = require_task(self._store, task_id)
            apply_task_action(self._store, task, "settle", actor, meta=override_meta(actor))
        return task

    def get_stats(self) -> dict[str, Any]:
        """Return task counts for the health endpoint."""
        return {
            "total_tasks": self._store.count_tasks(),
            "tasks_by_state": self._store.count_tasks_by_state(),
        }

    def close(self) -> None:
        """Close the underlying store."""
        self._store.close()
