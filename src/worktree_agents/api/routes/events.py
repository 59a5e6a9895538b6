"""Lifecycle event log endpoint."""

from typing import Any, Optional

from fastapi import APIRouter, Query, Request

from .agents import get_orchestrator

router = APIRouter()


@router.get("/events")
def list_events(
    request: Request,
    limit: int = Query(default=50, ge=1, le=1000),
    agent_id: Optional[int] = None,
) -> list[dict[str, Any]]:
    """Most recent lifecycle events, oldest first."""
    return get_orchestrator(request).recent_events(limit=limit, agent_id=agent_id)
