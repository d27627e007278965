"""Post-completion reviews."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.services.lifecycle import (
    apply_task_action,
    forbidden,
    is_booking_party,
    not_found,
    require_booking,
    require_task,
)
from taskhelper_service.services.marketplace_store import DuplicateReviewError, new_id, now_iso
from taskhelper_service.services.transitions import COMPLETED, SETTLED

if TYPE_CHECKING:
    from taskhelper_service.clients.notification_client import NotificationClient
    from taskhelper_service.services.marketplace_store import MarketplaceStore
    from taskhelper_service.services.token_validator import Actor


class ReviewManager:
    def __init__(self, store: MarketplaceStore, notifications: NotificationClient) -> None:
        self._store = store
        self._notifications = notifications

    async def create_review(
        self,
        actor: Actor,
        booking_id: str,
        rating: int,
        tags: list[str],
        comment: str | None,
    ) -> dict[str, Any]:
        """
        Review the other party of a completed booking.

        A settled task moves to reviewed with its first review.
        """
        with self._store.transaction():
            booking = require_booking(self._store, booking_id)
            if not is_booking_party(booking, actor):
                if actor.privileged:
                    raise forbidden("Only the booking's parties can review it")
                raise not_found("Booking", booking_id)
            if booking["status"] != COMPLETED:
                raise ServiceError(
                    "INVALID_STATE",
                    "Only completed bookings can be reviewed",
                    400,
                    {"status": booking["status"]},
                )

            reviewee_id = (
                booking["tasker_id"]
                if actor.user_id == booking["client_id"]
                else booking["client_id"]
            )
            review: dict[str, Any] = {
                "id": new_id(),
                "booking_id": booking_id,
                "reviewer_id": actor.user_id,
                "reviewee_id": reviewee_id,
                "rating": rating,
                "tags": tags,
                "comment": comment,
                "created_at": now_iso(),
            }
            try:
                self._store.insert_review(review)
            except DuplicateReviewError as exc:
                raise ServiceError(
                    "REVIEW_EXISTS",
                    "You have already reviewed this booking",
                    409,
                    {"booking_id": booking_id},
                ) from exc

            task = require_task(self._store, booking["task_id"])
            if task["state"] == SETTLED:
                apply_task_action(self._store, task, "review", actor, meta={"review_id": review["id"]})

        stored = self._store.get_review(review["id"])
        if stored is None:
            raise not_found("Review", review["id"])

        await self._notifications.publish(
            "review.created",
            reviewee_id,
            {"review_id": review["id"], "booking_id": booking_id, "rating": rating},
        )
        return stored
