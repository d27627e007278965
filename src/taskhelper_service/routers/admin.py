"""Operations endpoints. Every route requires an ops or admin token."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taskhelper_service.core.state import get_app_state
from taskhelper_service.routers.validation import authenticate, page_params, read_body
from taskhelper_service.schemas import AssignRequest, CandidatesRequest, ReasonRequest, ResolveRequest

if TYPE_CHECKING:
    from taskhelper_service.services.admin_manager import AdminManager
    from taskhelper_service.services.dispute_manager import DisputeManager

router = APIRouter(prefix="/admin")


def _admin_manager() -> AdminManager:
    state = get_app_state()
    if state.admin_manager is None:
        msg = "AdminManager not initialized"
        raise RuntimeError(msg)
    return state.admin_manager


def _dispute_manager() -> DisputeManager:
    state = get_app_state()
    if state.dispute_manager is None:
        msg = "DisputeManager not initialized"
        raise RuntimeError(msg)
    return state.dispute_manager


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/candidates")
async def add_candidates(task_id: str, request: Request) -> JSONResponse:
    """Ingest matching results for a posted task."""
    actor = authenticate(request)
    body = await read_body(request, CandidatesRequest)
    candidates = [candidate.model_dump() for candidate in body.candidates]
    result = await _admin_manager().add_candidates(actor, task_id, candidates)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/assign", status_code=201)
async def assign_task(task_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    body = await read_body(request, AssignRequest)
    rate = body.proposed_rate.model_dump() if body.proposed_rate is not None else None
    result = await _admin_manager().assign(
        actor, task_id, body.tasker_id, body.reason, rate, body.minimum_minutes
    )
    return JSONResponse(status_code=201, content=result)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task on the client's behalf."""
    actor = authenticate(request)
    body = await read_body(request, ReasonRequest)
    result = await _admin_manager().cancel_on_behalf_of_client(actor, task_id, body.reason)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/settle")
async def settle_task(task_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _admin_manager().settle(actor, task_id)
    return JSONResponse(status_code=200, content=result)


@router.get("/tasks/{task_id}/history")
async def task_history(task_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _admin_manager().history(actor, task_id)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.get("/disputes")
async def list_disputes(request: Request) -> JSONResponse:
    actor = authenticate(request)
    cursor, limit = page_params(request)
    status = request.query_params.get("status") or None
    result = await _dispute_manager().list_disputes(actor, status, cursor, limit)
    return JSONResponse(status_code=200, content=result)


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(dispute_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    body = await read_body(request, ResolveRequest)
    result = await _dispute_manager().resolve(
        actor, dispute_id, body.resolution, body.refund_amount
    )
    return JSONResponse(status_code=200, content=result)
