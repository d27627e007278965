"""Dispute and review endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taskhelper_service.core.state import get_app_state
from taskhelper_service.routers.validation import authenticate, read_body
from taskhelper_service.schemas import DisputeCreateRequest, EvidenceRequest, ReviewCreateRequest

if TYPE_CHECKING:
    from taskhelper_service.services.dispute_manager import DisputeManager
    from taskhelper_service.services.review_manager import ReviewManager

router = APIRouter()


def _dispute_manager() -> DisputeManager:
    state = get_app_state()
    if state.dispute_manager is None:
        msg = "DisputeManager not initialized"
        raise RuntimeError(msg)
    return state.dispute_manager


def _review_manager() -> ReviewManager:
    state = get_app_state()
    if state.review_manager is None:
        msg = "ReviewManager not initialized"
        raise RuntimeError(msg)
    return state.review_manager


@router.post("/disputes", status_code=201)
async def open_dispute(request: Request) -> JSONResponse:
    """Open a dispute on an in-progress or completed booking."""
    actor = authenticate(request)
    body = await read_body(request, DisputeCreateRequest)
    result = await _dispute_manager().open_dispute(
        actor, body.booking_id, body.reason, body.amount_in_question
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _dispute_manager().get_dispute(actor, dispute_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/disputes/{dispute_id}/evidence", status_code=201)
async def add_evidence(dispute_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    body = await read_body(request, EvidenceRequest)
    result = await _dispute_manager().add_evidence(actor, dispute_id, body.evidence)
    return JSONResponse(status_code=201, content=result)


@router.post("/reviews", status_code=201)
async def create_review(request: Request) -> JSONResponse:
    actor = authenticate(request)
    body = await read_body(request, ReviewCreateRequest)
    result = await _review_manager().create_review(
        actor, body.booking_id, body.rating, body.tags, body.comment
    )
    return JSONResponse(status_code=201, content=result)
