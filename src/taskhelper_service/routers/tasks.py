"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taskhelper_service.core.state import get_app_state
from taskhelper_service.routers.validation import authenticate, page_params, read_body
from taskhelper_service.schemas import (
    QuoteRequest,
    ReasonRequest,
    TaskCreateRequest,
    TaskUpdateRequest,
)

if TYPE_CHECKING:
    from taskhelper_service.services.bid_manager import BidManager
    from taskhelper_service.services.task_manager import TaskManager

router = APIRouter()


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


def _bid_manager() -> BidManager:
    state = get_app_state()
    if state.bid_manager is None:
        msg = "BidManager not initialized"
        raise RuntimeError(msg)
    return state.bid_manager


# ---------------------------------------------------------------------------
# POST /tasks and GET /tasks (MUST be before /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a task in draft state."""
    actor = authenticate(request)
    body = await read_body(request, TaskCreateRequest)
    result = await _task_manager().create_task(actor, body.model_dump(mode="json"))
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks")
async def list_tasks(request: Request) -> JSONResponse:
    """List tasks visible to the caller."""
    actor = authenticate(request)
    cursor, limit = page_params(request)
    state_filter = request.query_params.get("state") or None
    result = await _task_manager().list_tasks(actor, state_filter, cursor, limit)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Single task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _task_manager().get_task(actor, task_id)
    return JSONResponse(status_code=200, content=result)


@router.patch("/tasks/{task_id}")
async def update_task(task_id: str, request: Request) -> JSONResponse:
    """Edit a draft or posted task."""
    actor = authenticate(request)
    body = await read_body(request, TaskUpdateRequest)
    result = await _task_manager().update_task(
        actor, task_id, body.model_dump(mode="json", exclude_none=True)
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/post")
async def post_task(task_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _task_manager().post_task(actor, task_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task and its open bookings."""
    actor = authenticate(request)
    body = await read_body(request, ReasonRequest)
    result = await _task_manager().cancel_task(actor, task_id, body.reason)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Tasker responses
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/accept", status_code=201)
async def accept_task(task_id: str, request: Request) -> JSONResponse:
    """A candidate tasker accepts a matching task."""
    actor = authenticate(request)
    result = await _task_manager().accept_by_tasker(actor, task_id)
    return JSONResponse(status_code=201, content=result)


@router.post("/tasks/{task_id}/decline")
async def decline_task(task_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _task_manager().decline_by_tasker(actor, task_id)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Bids, quotes and timeline on a task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}/bids")
async def list_task_bids(task_id: str, request: Request) -> JSONResponse:
    actor = authenticate(request)
    result = await _bid_manager().list_bids(actor, task_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/quote-requests", status_code=201)
async def request_quote(task_id: str, request: Request) -> JSONResponse:
    """Ask a specific tasker to quote on the task."""
    actor = authenticate(request)
    body = await read_body(request, QuoteRequest)
    result = await _bid_manager().request_quote(actor, task_id, body.tasker_id, body.message)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/events")
async def task_events(task_id: str, request: Request) -> JSONResponse:
    """Merged task and booking timeline."""
    actor = authenticate(request)
    result = await _task_manager().history(actor, task_id)
    return JSONResponse(status_code=200, content=result)
