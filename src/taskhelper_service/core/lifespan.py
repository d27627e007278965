"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import redis.asyncio as redis

from taskhelper_service.clients.notification_client import NotificationClient
from taskhelper_service.config import get_settings
from taskhelper_service.core.state import init_app_state
from taskhelper_service.logging import get_logger, setup_logging
from taskhelper_service.services.admin_manager import AdminManager
from taskhelper_service.services.bid_manager import BidManager
from taskhelper_service.services.booking_manager import BookingManager
from taskhelper_service.services.dispute_manager import DisputeManager
from taskhelper_service.services.idempotency import IdempotencyCache
from taskhelper_service.services.marketplace_store import MarketplaceStore
from taskhelper_service.services.rate_limiter import (
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)
from taskhelper_service.services.review_manager import ReviewManager
from taskhelper_service.services.task_manager import TaskManager
from taskhelper_service.services.token_validator import TokenValidator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    # Redis is optional; without it idempotency replay is disabled.
    redis_client = None
    if settings.cache.redis_url is not None:
        redis_client = redis.from_url(settings.cache.redis_url)
    state.idempotency_cache = IdempotencyCache(
        client=redis_client,
        ttl_seconds=settings.cache.idempotency_ttl_seconds,
    )

    negotiation = settings.negotiation
    rate_limiter: RateLimiter
    if negotiation.rate_limit_backend == "redis":
        if settings.cache.redis_url is None:
            msg = "negotiation.rate_limit_backend 'redis' requires cache.redis_url"
            raise RuntimeError(msg)
        rate_limiter = RedisRateLimiter(
            client=redis.from_url(settings.cache.redis_url),
            max_messages=negotiation.max_messages,
            window_seconds=negotiation.window_seconds,
        )
    else:
        rate_limiter = InMemoryRateLimiter(
            max_messages=negotiation.max_messages,
            window_seconds=negotiation.window_seconds,
        )
    state.rate_limiter = rate_limiter

    notification_client = NotificationClient(
        base_url=settings.notifications.base_url,
        events_path=settings.notifications.events_path,
        timeout_seconds=settings.notifications.timeout_seconds,
    )
    state.notification_client = notification_client

    state.token_validator = TokenValidator(
        secret=settings.auth.jwt_secret,
        algorithms=settings.auth.algorithms,
    )

    # All managers share one store and so one write lock.
    store = MarketplaceStore(db_path=settings.database.path)
    task_manager = TaskManager(store=store, notifications=notification_client)
    state.task_manager = task_manager
    state.bid_manager = BidManager(
        store=store,
        notifications=notification_client,
        rate_limiter=rate_limiter,
        max_text_length=negotiation.max_text_length,
    )
    state.booking_manager = BookingManager(store=store, notifications=notification_client)
    state.dispute_manager = DisputeManager(store=store, notifications=notification_client)
    state.review_manager = ReviewManager(store=store, notifications=notification_client)
    state.admin_manager = AdminManager(
        store=store,
        notifications=notification_client,
        task_manager=task_manager,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "idempotency_enabled": state.idempotency_cache.enabled,
            "rate_limit_backend": negotiation.rate_limit_backend,
            "notifications_enabled": notification_client.enabled,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    task_manager.close()
    await state.notification_client.close()
    await state.idempotency_cache.close()
    await state.rate_limiter.close()
