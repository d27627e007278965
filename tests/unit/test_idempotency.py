"""Idempotency cache tests."""

from __future__ import annotations

import json
import uuid

import pytest

from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.services.idempotency import (
    IdempotencyCache,
    scope_idempotency_key,
    validate_idempotency_key,
)
from tests.helpers import FakeRedis


@pytest.mark.unit
class TestValidateKey:
    def test_canonicalises_uuid(self) -> None:
        raw = uuid.uuid4()
        assert validate_idempotency_key(str(raw).upper()) == str(raw)

    def test_rejects_non_uuid(self) -> None:
        with pytest.raises(ServiceError) as exc_info:
            validate_idempotency_key("retry-1")
        assert exc_info.value.error == "INVALID_IDEMPOTENCY_KEY"
        assert exc_info.value.status_code == 400

    def test_scope_binds_caller_and_endpoint(self) -> None:
        key = str(uuid.uuid4())
        scoped = scope_idempotency_key("u-amira", "POST", "/tasks", key)

        assert scoped == f"u-amira:POST:/tasks:{key}"
        assert scoped != scope_idempotency_key("u-omar", "POST", "/tasks", key)
        assert scoped != scope_idempotency_key("u-amira", "POST", "/bids", key)


@pytest.mark.unit
class TestIdempotencyCache:
    async def test_stores_and_replays_success(self) -> None:
        redis = FakeRedis()
        cache = IdempotencyCache(redis, ttl_seconds=86400)

        await cache.store("k-1", 201, b'{"id": "t-1"}')

        assert await cache.get("k-1") == {"status_code": 201, "body": '{"id": "t-1"}'}
        assert redis.expiries["idempotency:k-1"] == 86400
        assert json.loads(redis.strings["idempotency:k-1"])["status_code"] == 201

    async def test_error_responses_are_not_stored(self) -> None:
        redis = FakeRedis()
        cache = IdempotencyCache(redis, ttl_seconds=60)

        await cache.store("k-1", 409, b'{"error": {}}')

        assert await cache.get("k-1") is None
        assert redis.strings == {}

    async def test_miss_returns_none(self) -> None:
        assert await IdempotencyCache(FakeRedis(), ttl_seconds=60).get("absent") is None

    async def test_disabled_without_client(self) -> None:
        cache = IdempotencyCache(None, ttl_seconds=60)
        assert not cache.enabled
        await cache.store("k-1", 200, b"{}")
        assert await cache.get("k-1") is None
        await cache.close()

    async def test_redis_failures_degrade_to_miss(self) -> None:
        redis = FakeRedis()
        redis.fail = True
        cache = IdempotencyCache(redis, ttl_seconds=60)

        await cache.store("k-1", 200, b"{}")
        assert await cache.get("k-1") is None

    async def test_close_releases_client(self) -> None:
        redis = FakeRedis()
        await IdempotencyCache(redis, ttl_seconds=60).close()
        assert redis.closed
