"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskhelper_service.clients.notification_client import NotificationClient
    from taskhelper_service.services.admin_manager import AdminManager
    from taskhelper_service.services.bid_manager import BidManager
    from taskhelper_service.services.booking_manager import BookingManager
    from taskhelper_service.services.dispute_manager import DisputeManager
    from taskhelper_service.services.idempotency import IdempotencyCache
    from taskhelper_service.services.rate_limiter import RateLimiter
    from taskhelper_service.services.review_manager import ReviewManager
    from taskhelper_service.services.task_manager import TaskManager
    from taskhelper_service.services.token_validator import TokenValidator


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    task_manager: TaskManager | None = None
    bid_manager: BidManager | None = None
    booking_manager: BookingManager | None = None
    dispute_manager: DisputeManager | None = None
    admin_manager: AdminManager | None = None
    review_manager: ReviewManager | None = None
    token_validator: TokenValidator | None = None
    idempotency_cache: IdempotencyCache | None = None
    rate_limiter: RateLimiter | None = None
    notification_client: NotificationClient | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
