"""API routers."""

from taskhelper_service.routers import admin, bids, bookings, disputes, health, tasks

__all__ = ["admin", "bids", "bookings", "disputes", "health", "tasks"]
