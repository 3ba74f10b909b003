"""
Admin Endpoints - maintenance and diagnostics for the session engine.

1. Engine / store statistics and the executor circuit breaker
2. Retention cleanup and the expired-confirmation sweep
3. Session export / import (moving a conversation between stores)
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from guardchat.api.dependencies.admin_auth import require_admin_api_key
from guardchat.api.dependencies.engine import get_context_store, get_session_machine
from guardchat.conversation.manager import SessionStateMachine
from guardchat.conversation.models import SessionState
from guardchat.core.config import settings
from guardchat.core.logging import get_logger
from guardchat.store.base import ContextStore

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Invalid API key"},
}


class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    failure_threshold: int
    retry_after_seconds: float = Field(description="Seconds until a retry is allowed (0 unless open)")


class CleanupResponse(BaseModel):
    deleted: int
    older_than: datetime


class SweepResponse(BaseModel):
    expired: int


# ─── 1. Diagnostics ─────────────────────────────────────────────────────────

@router.get("/stats", summary="Engine and store statistics", responses=_AUTH_RESPONSES)
async def get_stats(
    machine: SessionStateMachine = Depends(get_session_machine),
) -> dict[str, Any]:
    return await machine.get_statistics()


@router.get("/store/stats", summary="Context store statistics", responses=_AUTH_RESPONSES)
async def get_store_stats(
    store: ContextStore = Depends(get_context_store),
) -> dict[str, Any]:
    return await store.get_statistics()


@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="Command executor circuit breaker",
    responses=_AUTH_RESPONSES,
)
async def get_circuit_breaker_status(
    machine: SessionStateMachine = Depends(get_session_machine),
) -> list[CircuitBreakerStatusResponse]:
    return [CircuitBreakerStatusResponse(**machine.executor_breaker.status())]


# ─── 2. Maintenance ─────────────────────────────────────────────────────────

@router.post("/cleanup", response_model=CleanupResponse, summary="Delete stale sessions", responses=_AUTH_RESPONSES)
async def cleanup_sessions(
    older_than_hours: Optional[int] = Query(None, ge=1, description="Defaults to SESSION_RETENTION_HOURS"),
    store: ContextStore = Depends(get_context_store),
) -> CleanupResponse:
    hours = older_than_hours or settings.SESSION_RETENTION_HOURS
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    deleted = await store.cleanup(cutoff)
    logger.info("Admin cleanup", extra_data={"deleted": deleted, "older_than_hours": hours})
    return CleanupResponse(deleted=deleted, older_than=cutoff)


@router.post(
    "/sweep-confirmations",
    response_model=SweepResponse,
    summary="Expire overdue confirmation gates",
    responses=_AUTH_RESPONSES,
)
async def sweep_confirmations(
    machine: SessionStateMachine = Depends(get_session_machine),
) -> SweepResponse:
    return SweepResponse(expired=await machine.sweep_expired_confirmations())


# ─── 3. Export / import ─────────────────────────────────────────────────────

@router.get("/sessions/{session_id}/export", summary="Export a session", responses=_AUTH_RESPONSES)
async def export_session(
    session_id: str,
    store: ContextStore = Depends(get_context_store),
) -> dict[str, Any]:
    data = await store.export_session(session_id)
    if data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session not found: {session_id}")
    return data


@router.post(
    "/sessions/import",
    response_model=SessionState,
    status_code=status.HTTP_201_CREATED,
    summary="Import an exported session",
    responses=_AUTH_RESPONSES,
)
async def import_session(
    data: dict[str, Any] = Body(...),
    store: ContextStore = Depends(get_context_store),
) -> SessionState:
    session = await store.import_session(data)
    logger.info(
        "Session imported",
        extra_data={"session_id": session.session_id, "messages": len(data.get("messages", []))}
    )
    return session
