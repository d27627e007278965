"""Replay cache for mutating requests carrying an Idempotency-Key."""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.logging import get_logger

if TYPE_CHECKING:
    from redis.asyncio import Redis


def validate_idempotency_key(raw: str) -> str:
    """Return the key in canonical form, or raise INVALID_IDEMPOTENCY_KEY."""
    try:
        return str(uuid.UUID(raw))
    except ValueError as exc:
        raise ServiceError(
            "INVALID_IDEMPOTENCY_KEY",
            "Idempotency-Key header must be a UUID",
            400,
            {},
        ) from exc


def scope_idempotency_key(user_id: str, method: str, path: str, idempotency_key: str) -> str:
    """Bind a client-supplied key to the caller and the endpoint it was sent to."""
    return f"{user_id}:{method}:{path}:{idempotency_key}"


class IdempotencyCache:
    """
    Stores the first successful response for each idempotency key.

    Best-effort: with no client configured, or when Redis fails, lookups miss
    and stores are skipped, so requests run without deduplication.
    """

    def __init__(self, client: Redis | None, ttl_seconds: int) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @staticmethod
    def _key(idempotency_key: str) -> str:
        return f"idempotency:{idempotency_key}"

    async def get(self, idempotency_key: str) -> dict[str, Any] | None:
        """Return the cached response ``{"status_code", "body"}`` or None."""
        if self._client is None:
            return None
        try:
            raw = await self._client.get(self._key(idempotency_key))
        except RedisError as exc:
            get_logger(__name__).warning(
                "Idempotency cache lookup failed",
                extra={"error": str(exc)},
            )
            return None
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        cached: dict[str, Any] = json.loads(raw)
        return cached

    async def store(self, idempotency_key: str, status_code: int, body: bytes) -> None:
        """Cache a 2xx response body for replay."""
        if self._client is None or not 200 <= status_code < 300:
            return
        payload = json.dumps({"status_code": status_code, "body": body.decode("utf-8")})
        try:
            await self._client.set(self._key(idempotency_key), payload, ex=self._ttl_seconds)
        except RedisError as exc:
            get_logger(__name__).warning(
                "Idempotency cache store failed",
                extra={"error": str(exc)},
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
