"""Sliding-window throttle for negotiation messages."""

from __future__ import annotations

import time
import uuid
from collections import deque
from threading import Lock
from typing import TYPE_CHECKING, Protocol

from taskhelper_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from redis.asyncio import Redis


class RateLimiter(Protocol):
    """Decides whether one more message may be sent on a (user, bid) thread."""

    async def hit(self, user_id: str, bid_id: str) -> bool: ...

    async def close(self) -> None: ...


def _trim(window: deque[float], cutoff: float) -> None:
    while window and window[0] <= cutoff:
        window.popleft()


class InMemoryRateLimiter:
    """
    Per-process sliding window.

    Each (user, bid) pair keeps the timestamps of its recent messages; a new
    message is admitted when fewer than ``max_messages`` fall inside the last
    ``window_seconds``. Pairs whose window has emptied are dropped, at most
    once per window, so idle threads do not accumulate. Suitable for a single
    service instance only.
    """

    def __init__(
        self,
        max_messages: int,
        window_seconds: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._max_messages = max_messages
        self._window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[tuple[str, str], deque[float]] = {}
        self._last_sweep = 0.0
        self._lock = Lock()

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return time.time()

    async def hit(self, user_id: str, bid_id: str) -> bool:
        """Record a message attempt; return False when the window is full."""
        now = self._now()
        cutoff = now - self._window_seconds
        with self._lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            window = self._hits.setdefault((user_id, bid_id), deque())
            _trim(window, cutoff)
            if len(window) >= self._max_messages:
                return False
            window.append(now)
            return True

    def _sweep(self, cutoff: float) -> None:
        for key in list(self._hits):
            window = self._hits[key]
            _trim(window, cutoff)
            if not window:
                del self._hits[key]

    async def close(self) -> None:
        with self._lock:
            self._hits.clear()


class RedisRateLimiter:
    """
    Sliding window shared by every service instance.

    Each (user, bid) pair is a sorted set scored by timestamp. Expired
    members are trimmed before counting, and the key expires once the
    window passes without activity. Trim, add and count run as one MULTI
    transaction; a message that overflows the window is removed again.
    """

    def __init__(
        self,
        client: Redis,
        max_messages: int,
        window_seconds: int,
        key_prefix: str = "ratelimit:messages",
    ) -> None:
        self._client = client
        self._max_messages = max_messages
        self._window_seconds = window_seconds
        self._key_prefix = key_prefix

    async def hit(self, user_id: str, bid_id: str) -> bool:
        key = f"{self._key_prefix}:{user_id}:{bid_id}"
        now = time.time()
        member = f"{now}:{uuid.uuid4().hex}"
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now - self._window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, self._window_seconds)
            _, _, count, _ = await pipe.execute()
        if count > self._max_messages:
            await self._client.zrem(key, member)
            get_logger(__name__).info(
                "Message rate limit reached",
                extra={"user_id": user_id, "bid_id": bid_id, "count": count},
            )
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()
