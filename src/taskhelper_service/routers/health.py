"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from taskhelper_service.core.state import get_app_state
from taskhelper_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return task counts."""
    state = get_app_state()
    total_tasks = 0
    tasks_by_state: dict[str, int] = {}
    if state.task_manager is not None:
        stats = state.task_manager.get_stats()
        total_tasks = stats["total_tasks"]
        tasks_by_state = stats["tasks_by_state"]
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        tasks_by_state=tasks_by_state,
    )
