"""Shared request validation helpers for the marketplace routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError

from taskhelper_service.config import get_settings
from taskhelper_service.core.exceptions import ServiceError
from taskhelper_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from taskhelper_service.services.token_validator import Actor

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure. An empty body is ``{}``."""
    if raw_body.strip() == b"":
        return {}

    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def validate_body(model: type[ModelT], data: dict[str, Any]) -> ModelT:
    """Validate parsed JSON against a request model."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ServiceError(
            "VALIDATION_ERROR",
            "Request body failed validation",
            400,
            {"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


async def read_body(request: Request, model: type[ModelT]) -> ModelT:
    """Read, parse and validate the request body in one step."""
    return validate_body(model, parse_json_body(await request.body()))


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the token from an Authorization header."""
    if authorization is None:
        raise ServiceError(
            "UNAUTHORIZED",
            "Missing Authorization header",
            401,
            {},
        )

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError(
            "UNAUTHORIZED",
            "Bearer token must not be empty",
            401,
            {},
        )

    return token


def authenticate(request: Request) -> Actor:
    """Resolve the calling actor from the request's bearer token."""
    token = extract_bearer_token(request.headers.get("authorization"))
    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)
    return state.token_validator.validate(token)


def page_params(request: Request) -> tuple[str | None, int]:
    """Read ``cursor`` and ``limit`` query parameters."""
    pagination = get_settings().pagination
    cursor = request.query_params.get("cursor") or None
    raw_limit = request.query_params.get("limit")
    if raw_limit is None:
        return cursor, pagination.default_limit

    try:
        limit = int(raw_limit)
    except ValueError as exc:
        raise ServiceError(
            "VALIDATION_ERROR",
            "limit must be an integer",
            400,
            {"limit": raw_limit},
        ) from exc

    if limit < 1:
        raise ServiceError(
            "VALIDATION_ERROR",
            "limit must be at least 1",
            400,
            {"limit": limit},
        )
    return cursor, min(limit, pagination.max_limit)
