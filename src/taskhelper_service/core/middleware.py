"""ASGI middleware for request validation and idempotent replay."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse, Response

from taskhelper_service.core.exceptions import ServiceError, error_body
from taskhelper_service.core.state import get_app_state
from taskhelper_service.routers.validation import extract_bearer_token
from taskhelper_service.services.idempotency import (
    scope_idempotency_key,
    validate_idempotency_key,
)

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

    from taskhelper_service.services.token_validator import Actor


_ID = r"[^/]+"
_JSON_ENDPOINTS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (method, re.compile(pattern))
    for method, pattern in (
        ("POST", r"^/tasks$"),
        ("PATCH", rf"^/tasks/{_ID}$"),
        ("POST", rf"^/tasks/{_ID}/(post|cancel|accept|decline|quote-requests)$"),
        ("POST", r"^/bids$"),
        ("POST", rf"^/bids/{_ID}/(accept|decline|messages)$"),
        ("POST", r"^/bookings$"),
        ("POST", rf"^/bookings/{_ID}/(accept|reject|arrived|status|cancel)$"),
        ("POST", r"^/disputes$"),
        ("POST", rf"^/disputes/{_ID}/evidence$"),
        ("POST", r"^/reviews$"),
        ("POST", rf"^/admin/tasks/{_ID}/(candidates|assign|cancel|settle)$"),
        ("POST", rf"^/admin/disputes/{_ID}/resolve$"),
    )
)

IDEMPOTENCY_HEADER = b"idempotency-key"
REPLAY_HEADER = "Idempotent-Replay"


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message))


def _authenticate(headers: dict[bytes, bytes]) -> Actor:
    raw = headers.get(b"authorization")
    token = extract_bearer_token(raw.decode("latin-1") if raw is not None else None)
    validator = get_app_state().token_validator
    if validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)
    return validator.validate(token)


class RequestValidationMiddleware:
    """
    ASGI middleware that validates Content-Type and body size, and replays
    cached responses for repeated Idempotency-Key values.

    Runs before FastAPI routes. Returns 415 for a non-JSON body and 413 for
    an oversized body on the JSON endpoints. A request with no body needs no
    Content-Type. POST requests with a valid Idempotency-Key are answered
    from the cache when a 2xx response was already recorded for that key.
    Keys are scoped to the authenticated caller, the method and the path, so
    the caller is verified before any lookup.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = cast("str", scope.get("method", "GET"))
        path = cast("str", scope.get("path", ""))

        # Unknown endpoint/method combos should be handled by router as 404/405.
        if not any(
            candidate == method and pattern.match(path) is not None
            for candidate, pattern in _JSON_ENDPOINTS
        ):
            await self.app(scope, receive, send)
            return

        raw_headers = cast("list[tuple[bytes, bytes]]", scope.get("headers", []))
        headers: dict[bytes, bytes] = dict(raw_headers)
        content_type = headers.get(b"content-type", b"").decode().lower()

        # Read and buffer body, checking size
        body_parts: list[bytes] = []
        body_size = 0
        while True:
            message = cast("dict[str, Any]", await receive())
            chunk = cast("bytes", message.get("body", b""))
            body_parts.append(chunk)
            body_size += len(chunk)

            if body_size > self.max_body_size:
                response = _error_response(
                    413, "PAYLOAD_TOO_LARGE", "Request body exceeds maximum allowed size"
                )
                await response(scope, receive, send)
                return

            if not message.get("more_body", False):
                break

        if body_size > 0 and not content_type.startswith("application/json"):
            response = _error_response(
                415, "UNSUPPORTED_MEDIA_TYPE", "Content-Type must be application/json"
            )
            await response(scope, receive, send)
            return

        full_body = b"".join(body_parts)
        body_sent = False

        async def buffered_receive() -> dict[str, Any]:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": full_body, "more_body": False}
            return {"type": "http.disconnect"}

        raw_key = headers.get(IDEMPOTENCY_HEADER)
        if method != "POST" or raw_key is None:
            await self.app(scope, buffered_receive, send)
            return

        try:
            idempotency_key = validate_idempotency_key(raw_key.decode())
        except ServiceError as exc:
            response = _error_response(exc.status_code, exc.error, exc.message)
            await response(scope, receive, send)
            return

        cache = get_app_state().idempotency_cache
        if cache is None or not cache.enabled:
            await self.app(scope, buffered_receive, send)
            return

        try:
            actor = _authenticate(headers)
        except ServiceError as exc:
            response = _error_response(exc.status_code, exc.error, exc.message)
            await response(scope, receive, send)
            return
        cache_key = scope_idempotency_key(actor.user_id, method, path, idempotency_key)

        cached = await cache.get(cache_key)
        if cached is not None:
            replay = Response(
                content=cast("str", cached["body"]),
                status_code=int(cached["status_code"]),
                media_type="application/json",
                headers={REPLAY_HEADER: "true"},
            )
            await replay(scope, receive, send)
            return

        status_code = 500
        response_parts: list[bytes] = []

        async def capturing_send(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message["status"])
            elif message["type"] == "http.response.body":
                response_parts.append(cast("bytes", message.get("body", b"")))
            await send(message)

        await self.app(scope, buffered_receive, capturing_send)
        await cache.store(cache_key, status_code, b"".join(response_parts))
