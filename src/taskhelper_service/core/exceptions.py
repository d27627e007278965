"""Service error type and exception handlers for consistent error responses."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any, cast

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskhelper_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = ["ServiceError", "error_body", "register_exception_handlers"]


class ServiceError(Exception):
    """
    Error raised by managers and routers, rendered as the error envelope.

    Attributes:
        error: Machine-readable error code (e.g. INVALID_STATE)
        message: Human-readable description
        status_code: HTTP status code for the response
        details: Optional structured context
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}


def error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    """Build the uniform error envelope."""
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details if details is not None else {},
        }
    }


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    logger.warning(
        "Service error",
        extra={
            "error_code": exc.error,
            "status_code": exc.status_code,
            "path": str(request.url.path),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.error, exc.message, exc.details),
    )


async def integrity_error_handler(request: Request, exc: sqlite3.IntegrityError) -> JSONResponse:
    """Map storage constraint violations that escaped the managers."""
    logger = get_logger(__name__)
    message = str(exc).lower()
    logger.warning(
        "Constraint violation",
        extra={"path": str(request.url.path), "error": str(exc)},
    )
    if "foreign key" in message:
        return JSONResponse(
            status_code=400,
            content=error_body("INVALID_REFERENCE", "Referenced resource does not exist"),
        )
    return JSONResponse(
        status_code=409,
        content=error_body("CONFLICT", "Resource already exists"),
    )


async def operational_error_handler(request: Request, exc: sqlite3.OperationalError) -> JSONResponse:
    """Fail fast when the database cannot serve the request."""
    logger = get_logger(__name__)
    logger.error(
        "Database unavailable",
        extra={"path": str(request.url.path), "error": str(exc)},
    )
    return JSONResponse(
        status_code=503,
        content=error_body("SERVICE_UNAVAILABLE", "Database service is not available"),
    )


async def request_validation_handler(
    _request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Render FastAPI parameter validation failures in the error envelope."""
    return JSONResponse(
        status_code=400,
        content=error_body(
            "VALIDATION_ERROR",
            "Request validation failed",
            {"errors": cast("list[Any]", exc.errors())},
        ),
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_ERROR", "An unexpected error occurred"),
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 404 and 405 from the router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content=error_body("METHOD_NOT_ALLOWED", "Method not allowed"),
        )
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content=error_body(
                "NOT_FOUND",
                f"Route {request.method} {request.url.path} not found",
            ),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body("HTTP_ERROR", str(exc.detail)),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(
        sqlite3.IntegrityError,
        cast("ExceptionHandler", integrity_error_handler),
    )
    app.add_exception_handler(
        sqlite3.OperationalError,
        cast("ExceptionHandler", operational_error_handler),
    )
    app.add_exception_handler(
        RequestValidationError,
        cast("ExceptionHandler", request_validation_handler),
    )
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
    app.add_exception_handler(Exception, unhandled_exception_handler)
