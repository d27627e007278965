"""Booking lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taskhelper_service.core.state import get_app_state
from taskhelper_service.routers.validation import authenticate, page_params, read_body
from taskhelper_service.schemas import BookingCreateRequest, BookingStatusRequest, ReasonRequest

if TYPE_CHECKING:
    from taskhelper_service.services.booking_manager import BookingManager

router = APIRouter()


def _booking_manager() -> BookingManager:
    state = get_app_state()
    if state.booking_manager is None:
        msg = "BookingManager not initialized"
        raise RuntimeError(msg)
    return state.booking_manager


@router.post("/bookings", status_code=201)
async def create_booking(request: Request) -> JSONResponse:
    """Book a tasker directly for one of the caller's tasks."""
    actor = authenticate(request)
    body = await read_body(request, BookingCreateRequest)
    rate = body.proposed_rate.model_dump() if body.proposed_rate is not None else None
    result = await _booking_manager().create_booking(
        actor, body.task_id, body.tasker_id, rate, body.minimum_minutes
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/bookings")
async def list_bookings(request: Request) -> JSONResponse:
    actor = authenticate(request)
    cursor, limit = page_params(request)
    status = request.query_params.get("status") or None
    result = await _booking_manager().list_bookings(actor, status, cursor, limit)
    return JSONResponse(status_code=200, content=result)


@router.get("/bookings/{booking_id}")
async def get_booking(booking_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _booking_manager().get_booking(actor, booking_id)
    return JSONResponse(status_code=200, content=result)


@router.get("/bookings/{booking_id}/events")
async def booking_events(booking_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _booking_manager().list_events(actor, booking_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/bookings/{booking_id}/accept")
async def accept_booking(booking_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _booking_manager().accept(actor, booking_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/bookings/{booking_id}/reject")
async def reject_booking(booking_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    body = await read_body(request, ReasonRequest)
    result = await _booking_manager().reject(actor, booking_id, body.reason)
    return JSONResponse(status_code=200, content=result)


@router.post("/bookings/{booking_id}/arrived")
async def mark_arrived(booking_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _booking_manager().mark_arrived(actor, booking_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/bookings/{booking_id}/status")
async def update_booking_status(booking_id: str, request: Request) -> JSONResponse:
    """Apply a generic booking status transition."""
    actor = authenticate(request)
    body = await read_body(request, BookingStatusRequest)
    result = await _booking_manager().update_status(actor, booking_id, body.status, body.meta)
    return JSONResponse(status_code=200, content=result)


@router.post("/bookings/{booking_id}/cancel")
async def cancel_booking(booking_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    body = await read_body(request, ReasonRequest)
    result = await _booking_manager().cancel(actor, booking_id, body.reason)
    return JSONResponse(status_code=200, content=result)
