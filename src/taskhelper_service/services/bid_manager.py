"""Bid submission, quote requests, negotiation threads and bid acceptance."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.logging import get_logger
from taskhelper_service.services.lifecycle import (
    apply_task_action,
    booking_exists_error,
    create_offered_booking,
    forbidden,
    not_found,
    require_task,
    require_task_owner,
)
from taskhelper_service.services.marketplace_store import DuplicateBidError, new_id, now_iso
from taskhelper_service.services.query_builder import PageQuery
from taskhelper_service.services.transitions import (
    BID_ACCEPTED,
    BID_DECLINED,
    BID_PENDING,
    BID_REQUESTED,
    BIDDABLE_TASK_STATES,
    NEGOTIABLE_BID_STATUSES,
    TASKER,
    ensure_task_state,
)

if TYPE_CHECKING:
    from taskhelper_service.clients.notification_client import NotificationClient
    from taskhelper_service.services.marketplace_store import MarketplaceStore
    from taskhelper_service.services.rate_limiter import RateLimiter
    from taskhelper_service.services.token_validator import Actor


def _invalid_bid_state(bid: dict[str, Any], operation: str) -> ServiceError:
    return ServiceError(
        "INVALID_BID_STATE",
        f"Cannot {operation} a bid in '{bid['status']}' status",
        400,
        {"bid_id": bid["id"], "status": bid["status"]},
    )


class BidManager:
    """Handles bids and the negotiation thread attached to each bid."""

    def __init__(
        self,
        store: MarketplaceStore,
        notifications: NotificationClient,
        rate_limiter: RateLimiter,
        max_text_length: int,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._rate_limiter = rate_limiter
        self._max_text_length = max_text_length

    def _require_bid(self, bid_id: str) -> dict[str, Any]:
        bid = self._store.get_bid(bid_id)
        if bid is None:
            raise not_found("Bid", bid_id)
        return bid

    def _require_party(self, bid: dict[str, Any], task: dict[str, Any], actor: Actor) -> None:
        if actor.user_id not in (bid["tasker_id"], task["client_id"]):
            raise forbidden("Only the bidding tasker and the task owner can access this bid")

    # ------------------------------------------------------------------
    # Tasker side
    # ------------------------------------------------------------------

    async def submit_bid(self, actor: Actor, fields: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """
        Submit a new bid or revise an open one.

        Returns:
            (bid, created) where created is False when an existing bid was updated
        """
        if actor.role != TASKER:
            raise forbidden("Only taskers can submit bids")

        task_id = fields["task_id"]
        terms = {
            "amount": fields["amount"],
            "currency": fields["currency"],
            "minimum_minutes": fields["minimum_minutes"],
            "message": fields.get("message"),
            "can_start_at": fields.get("can_start_at"),
        }

        with self._store.transaction():
            task = require_task(self._store, task_id)
            ensure_task_state(task["state"], BIDDABLE_TASK_STATES, "bid on")

            existing = self._store.get_bid_for_pair(task_id, actor.user_id)
            if existing is not None:
                if existing["status"] not in NEGOTIABLE_BID_STATUSES:
                    raise _invalid_bid_state(existing, "update")
                self._store.update_bid(
                    existing["id"],
                    {**terms, "status": BID_PENDING, "updated_at": now_iso()},
                    expected_status=existing["status"],
                )
                bid_id = existing["id"]
                created = False
            else:
                if task["bid_mode"] == "invite_only" and not self._store.is_candidate(
                    task_id, actor.user_id
                ):
                    raise ServiceError(
                        "NOT_OFFERED",
                        "This task only accepts bids from invited taskers",
                        403,
                        {"task_id": task_id},
                    )
                timestamp = now_iso()
                bid_id = new_id()
                try:
                    self._store.insert_bid(
                        {
                            "id": bid_id,
                            "task_id": task_id,
                            "tasker_id": actor.user_id,
                            **terms,
                            "status": BID_PENDING,
                            "created_at": timestamp,
                            "updated_at": timestamp,
                        }
                    )
                except DuplicateBidError as exc:
                    raise ServiceError(
                        "CONFLICT",
                        "A bid already exists for this task",
                        409,
                        {"task_id": task_id},
                    ) from exc
                created = True

        bid = self._require_bid(bid_id)
        get_logger(__name__).info(
            "Bid submitted",
            extra={"bid_id": bid_id, "task_id": task_id, "created": created},
        )
        await self._notifications.publish(
            "bid.submitted",
            task["client_id"],
            {"bid_id": bid_id, "task_id": task_id, "amount": bid["amount"]},
        )
        return bid, created

    # ------------------------------------------------------------------
    # Client side
    # ------------------------------------------------------------------

    async def request_quote(
        self,
        actor: Actor,
        task_id: str,
        tasker_id: str,
        message: str | None,
    ) -> dict[str, Any]:
        """Invite a tasker to quote; creates a bid with no amount yet."""
        with self._store.transaction():
            task = require_task(self._store, task_id)
            require_task_owner(task, actor)
            ensure_task_state(task["state"], BIDDABLE_TASK_STATES, "request quotes for")

            timestamp = now_iso()
            bid_id = new_id()
            try:
                self._store.insert_bid(
                    {
                        "id": bid_id,
                        "task_id": task_id,
                        "tasker_id": tasker_id,
                        "amount": None,
                        "currency": task["currency"],
                        "minimum_minutes": 60,
                        "message": message,
                        "can_start_at": None,
                        "status": BID_REQUESTED,
                        "created_at": timestamp,
                        "updated_at": timestamp,
                    }
                )
            except DuplicateBidError as exc:
                raise ServiceError(
                    "CONFLICT",
                    "This tasker already has a bid on the task",
                    409,
                    {"task_id": task_id, "tasker_id": tasker_id},
                ) from exc

        await self._notifications.publish(
            "bid.quote_requested",
            tasker_id,
            {"bid_id": bid_id, "task_id": task_id},
        )
        return self._require_bid(bid_id)

    async def accept_bid(self, actor: Actor, bid_id: str) -> dict[str, Any]:
        """
        Accept a pending bid.

        Creates an offered booking from the bid's terms, declines every other
        pending bid on the task and moves the task to accepted, all in one
        transaction. The first accept to commit wins; later ones see the
        active booking and fail with BOOKING_EXISTS.
        """
        with self._store.transaction():
            bid = self._require_bid(bid_id)
            task = require_task(self._store, bid["task_id"])
            require_task_owner(task, actor)
            # Checked before the bid status: a losing concurrent accept finds its
            # bid already declined by the winner.
            if self._store.find_active_booking(task["id"]) is not None:
                raise booking_exists_error(task["id"])
            if bid["status"] != BID_PENDING:
                raise _invalid_bid_state(bid, "accept")
            if bid["amount"] is None:
                raise ServiceError(
                    "INVALID_BID",
                    "Bid has no amount to accept",
                    400,
                    {"bid_id": bid_id},
                )

            booking = create_offered_booking(
                self._store,
                task,
                bid["tasker_id"],
                actor,
                amount=bid["amount"],
                currency=bid["currency"],
                minimum_minutes=bid["minimum_minutes"],
                bid_id=bid_id,
                meta={"source": "bid_accept", "bid_id": bid_id},
            )
            timestamp = now_iso()
            self._store.update_bid(
                bid_id,
                {"status": BID_ACCEPTED, "updated_at": timestamp},
                expected_status=BID_PENDING,
            )
            declined = self._store.decline_other_pending_bids(task["id"], bid_id, timestamp)
            apply_task_action(
                self._store,
                task,
                "assign",
                actor,
                meta={"bid_id": bid_id, "booking_id": booking["id"]},
            )

        get_logger(__name__).info(
            "Bid accepted",
            extra={"bid_id": bid_id, "booking_id": booking["id"], "declined_bids": declined},
        )
        await self._notifications.publish(
            "booking.offered",
            bid["tasker_id"],
            {"booking_id": booking["id"], "task_id": task["id"], "bid_id": bid_id},
        )
        return {"booking": booking, "bid": self._require_bid(bid_id), "task": task}

    async def decline_bid(self, actor: Actor, bid_id: str) -> dict[str, Any]:
        """Decline a requested or pending bid."""
        with self._store.transaction():
            bid = self._require_bid(bid_id)
            task = require_task(self._store, bid["task_id"])
            require_task_owner(task, actor)
            if bid["status"] not in NEGOTIABLE_BID_STATUSES:
                raise _invalid_bid_state(bid, "decline")
            self._store.update_bid(
                bid_id,
                {"status": BID_DECLINED, "updated_at": now_iso()},
                expected_status=bid["status"],
            )

        await self._notifications.publish(
            "bid.declined",
            bid["tasker_id"],
            {"bid_id": bid_id, "task_id": task["id"]},
        )
        return self._require_bid(bid_id)

    async def list_bids(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Owner and privileged actors see every bid; a tasker sees only their own."""
        task = require_task(self._store, task_id)
        if actor.privileged or task["client_id"] == actor.user_id:
            items = self._store.list_bids_for_task(task_id)
        elif actor.role == TASKER:
            items = self._store.list_bids_for_task(task_id, tasker_id=actor.user_id)
        else:
            raise forbidden("Only the task owner can list bids")
        return {"items": items}

    # ------------------------------------------------------------------
    # Negotiation thread
    # ------------------------------------------------------------------

    async def send_message(
        self,
        actor: Actor,
        bid_id: str,
        kind: str,
        text: str | None,
        media_url: str | None,
    ) -> dict[str, Any]:
        """Append a message to a bid's negotiation thread."""
        bid = self._require_bid(bid_id)
        task = require_task(self._store, bid["task_id"])
        self._require_party(bid, task, actor)
        if text is not None and len(text) > self._max_text_length:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Message text exceeds {self._max_text_length} characters",
                400,
                {"max_length": self._max_text_length},
            )

        # Every rejection happens before the send takes a slot in the window
        if bid["status"] not in NEGOTIABLE_BID_STATUSES:
            raise _invalid_bid_state(bid, "message on")
        if not await self._rate_limiter.hit(actor.user_id, bid_id):
            raise ServiceError(
                "RATE_LIMITED",
                "Too many messages on this bid, try again shortly",
                429,
                {"bid_id": bid_id},
            )

        message: dict[str, Any] = {
            "id": new_id(),
            "bid_id": bid_id,
            "sender_id": actor.user_id,
            "kind": kind,
            "text": text,
            "media_url": media_url,
            "created_at": now_iso(),
        }
        with self._store.transaction():
            current = self._require_bid(bid_id)
            if current["status"] not in NEGOTIABLE_BID_STATUSES:
                raise _invalid_bid_state(current, "message on")
            self._store.insert_message(message)
        stored = self._store.get_message(message["id"])
        if stored is None:
            raise not_found("Message", message["id"])

        recipient = task["client_id"] if actor.user_id == bid["tasker_id"] else bid["tasker_id"]
        await self._notifications.publish(
            "bid.message",
            recipient,
            {"bid_id": bid_id, "message_id": message["id"], "kind": kind},
        )
        return stored

    async def list_messages(
        self,
        actor: Actor,
        bid_id: str,
        cursor: str | None,
        limit: int,
    ) -> dict[str, Any]:
        """Page through a bid's messages, newest first."""
        bid = self._require_bid(bid_id)
        task = require_task(self._store, bid["task_id"])
        if not actor.privileged:
            self._require_party(bid, task, actor)

        query = PageQuery("bid_messages", cursor=cursor, limit=limit).where("bid_id", bid_id)
        items, next_cursor = self._store.fetch_page(query)
        return {"items": items, "next_cursor": next_cursor}
