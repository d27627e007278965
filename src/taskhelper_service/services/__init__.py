"""Service layer components."""

from taskhelper_service.services.admin_manager import AdminManager
from taskhelper_service.services.bid_manager import BidManager
from taskhelper_service.services.booking_manager import BookingManager
from taskhelper_service.services.dispute_manager import DisputeManager
from taskhelper_service.services.marketplace_store import MarketplaceStore
from taskhelper_service.services.review_manager import ReviewManager
from taskhelper_service.services.task_manager import TaskManager
from taskhelper_service.services.token_validator import Actor, TokenValidator

__all__ = [
    "Actor",
    "AdminManager",
    "BidManager",
    "BookingManager",
    "DisputeManager",
    "MarketplaceStore",
    "ReviewManager",
    "TaskManager",
    "TokenValidator",
]
