"""Shared test helpers for bearer tokens and an in-process Redis double."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from joserfc import jwt
from joserfc.jwk import OctKey
from redis.exceptions import ConnectionError as RedisConnectionError

TEST_JWT_SECRET = "test-secret-for-bearer-tokens-0123456789"


def make_token(
    user_id: str,
    role: str,
    *,
    secret: str = TEST_JWT_SECRET,
    expires_in: int = 3600,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Create an HS256 bearer token for the given user and role."""
    now = int(time.time())
    claims: dict[str, Any] = {"sub": user_id, "role": role, "iat": now, "exp": now + expires_in}
    if extra_claims:
        claims.update(extra_claims)
    return jwt.encode({"alg": "HS256"}, claims, OctKey.import_key(secret))


def make_claims_token(claims: dict[str, Any], *, secret: str = TEST_JWT_SECRET) -> str:
    """Sign an arbitrary claim set (for malformed-claim tests)."""
    return jwt.encode({"alg": "HS256"}, claims, OctKey.import_key(secret))


def auth_headers(user_id: str, role: str) -> dict[str, str]:
    """Authorization header for the given user and role."""
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


class FakeRedis:
    """
    Minimal async Redis double covering the commands the service issues.

    Strings for the idempotency cache, sorted sets for the rate limiter.
    Set ``fail`` to make every command raise a Redis connection error.
    """

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.expiries: dict[str, int] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key: str) -> bytes | None:
        self._check()
        value = self.strings.get(key)
        return value.encode("utf-8") if value is not None else None

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.strings[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    def _zremrangebyscore(self, key: str, minimum: float, maximum: float) -> int:
        members = self.zsets.get(key, {})
        stale = [member for member, score in members.items() if minimum <= score <= maximum]
        for member in stale:
            del members[member]
        return len(stale)

    def _zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    def _zadd(self, key: str, mapping: dict[str, float]) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def _expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True

    async def zremrangebyscore(self, key: str, minimum: float, maximum: float) -> int:
        self._check()
        return self._zremrangebyscore(key, minimum, maximum)

    async def zcard(self, key: str) -> int:
        self._check()
        return self._zcard(key)

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        return self._zadd(key, mapping)

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        return self._expire(key, seconds)

    async def zrem(self, key: str, *members: str) -> int:
        self._check()
        zset = self.zsets.get(key, {})
        removed = [member for member in members if zset.pop(member, None) is not None]
        return len(removed)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


class FakePipeline:
    """Queues sorted-set commands and runs them back to back on execute()."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._commands: list[Callable[[], Any]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._commands.clear()

    def zremrangebyscore(self, key: str, minimum: float, maximum: float) -> FakePipeline:
        self._commands.append(lambda: self._redis._zremrangebyscore(key, minimum, maximum))
        return self

    def zadd(self, key: str, mapping: dict[str, float]) -> FakePipeline:
        self._commands.append(lambda: self._redis._zadd(key, mapping))
        return self

    def zcard(self, key: str) -> FakePipeline:
        self._commands.append(lambda: self._redis._zcard(key))
        return self

    def expire(self, key: str, seconds: int) -> FakePipeline:
        self._commands.append(lambda: self._redis._expire(key, seconds))
        return self

    async def execute(self) -> list[Any]:
        self._redis._check()
        results = [command() for command in self._commands]
        self._commands.clear()
        return results
