"""Bid submission, response and negotiation endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taskhelper_service.core.state import get_app_state
from taskhelper_service.routers.validation import authenticate, page_params, read_body
from taskhelper_service.schemas import BidSubmitRequest, MessageRequest

if TYPE_CHECKING:
    from taskhelper_service.services.bid_manager import BidManager

router = APIRouter()


def _bid_manager() -> BidManager:
    state = get_app_state()
    if state.bid_manager is None:
        msg = "BidManager not initialized"
        raise RuntimeError(msg)
    return state.bid_manager


@router.post("/bids")
async def submit_bid(request: Request) -> JSONResponse:
    """Submit a bid (201) or revise the caller's open bid on the task (200)."""
    actor = authenticate(request)
    body = await read_body(request, BidSubmitRequest)
    bid, created = await _bid_manager().submit_bid(actor, body.model_dump(mode="json"))
    return JSONResponse(status_code=201 if created else 200, content=bid)


@router.post("/bids/{bid_id}/accept", status_code=201)
async def accept_bid(bid_id: str, request: Request) -> JSONResponse:
    """Accept a bid; creates the booking."""
    actor = authenticate(request)
    result = await _bid_manager().accept_bid(actor, bid_id)
    return JSONResponse(status_code=201, content=result)


@router.post("/bids/{bid_id}/decline")
async def decline_bid(bid_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _bid_manager().decline_bid(actor, bid_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/bids/{bid_id}/messages", status_code=201)
async def send_message(bid_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    body = await read_body(request, MessageRequest)
    result = await _bid_manager().send_message(
        actor, bid_id, body.kind, body.text, body.media_url
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/bids/{bid_id}/messages")
async def list_messages(bid_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    cursor, limit = page_params(request)
    result = await _bid_manager().list_messages(actor, bid_id, cursor, limit)
    return JSONResponse(status_code=200, content=result)
