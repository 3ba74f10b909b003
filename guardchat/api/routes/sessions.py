"""
Session API Routes

HTTP surface of the session engine for remote terminals: open a session,
submit input, answer confirmation gates and drive guided workflows.
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator

from guardchat.api.dependencies.engine import get_session_machine
from guardchat.conversation.manager import SessionStateMachine
from guardchat.conversation.models import (
    ContextualSuggestion,
    Message,
    SessionPreferences,
    SessionSnapshot,
    SessionState,
    TurnResult,
    WorkflowProgress,
    WorkflowState,
)
from guardchat.core.logging import get_correlation_id, get_logger

logger = get_logger(__name__)

router = APIRouter()

MAX_INPUT_LENGTH = 4000


class SessionCreate(BaseModel):
    """Schema for opening a session"""
    user_id: Optional[str] = Field(default=None, max_length=128)
    session_id: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_\-]{1,64}$")
    preferences: Optional[SessionPreferences] = None


class InputRequest(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("text must not be empty")
        if len(v) > MAX_INPUT_LENGTH:
            raise ValueError(f"text must be at most {MAX_INPUT_LENGTH} characters")
        return v


class ConfirmationReply(BaseModel):
    """Answer to an open confirmation gate; defaults to confirming"""
    response: str = "yes"


class ClearHistoryResponse(BaseModel):
    session_id: str
    cleared: int


class WorkflowStart(BaseModel):
    template_id: str
    variables: dict[str, Any] = Field(default_factory=dict)


class WorkflowAdvance(BaseModel):
    result: Optional[dict[str, Any]] = None


class WorkflowResponse(BaseModel):
    workflow: Optional[WorkflowState] = None
    progress: Optional[WorkflowProgress] = None
    active: bool = False


def _workflow_response(workflow: Optional[WorkflowState], active: bool) -> WorkflowResponse:
    return WorkflowResponse(
        workflow=workflow,
        progress=workflow.progress() if workflow else None,
        active=active,
    )


# ─── Sessions ───────────────────────────────────────────────────────────────

@router.post(
    "",
    response_model=TurnResult,
    status_code=status.HTTP_201_CREATED,
    summary="Open a session",
)
async def create_session(
    payload: SessionCreate,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> TurnResult:
    return await machine.start_session(
        user_id=payload.user_id,
        session_id=payload.session_id,
        preferences=payload.preferences,
    )


@router.get("", response_model=list[SessionState], summary="List sessions")
async def list_sessions(
    active_only: bool = Query(False),
    machine: SessionStateMachine = Depends(get_session_machine),
) -> list[SessionState]:
    return await machine.list_sessions(active_only=active_only)


@router.get("/{session_id}", response_model=SessionSnapshot, summary="Session snapshot")
async def get_session(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> SessionSnapshot:
    """State, pending confirmation (with remaining time) and a context summary"""
    return await machine.snapshot(session_id)


@router.post("/{session_id}/input", response_model=TurnResult, summary="Submit user input")
async def submit_input(
    session_id: str,
    payload: InputRequest,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> TurnResult:
    return await machine.process_input(session_id, payload.text, correlation_id=get_correlation_id())


@router.post("/{session_id}/confirm", response_model=TurnResult, summary="Answer the confirmation gate")
async def confirm(
    session_id: str,
    payload: ConfirmationReply = ConfirmationReply(),
    machine: SessionStateMachine = Depends(get_session_machine),
) -> TurnResult:
    return await machine.resolve_confirmation(session_id, payload.response)


@router.post("/{session_id}/cancel", response_model=TurnResult, summary="Cancel a pending confirmation or clarification")
async def cancel(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> TurnResult:
    return await machine.cancel(session_id)


@router.post("/{session_id}/acknowledge", response_model=TurnResult, summary="Acknowledge an error")
async def acknowledge(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> TurnResult:
    return await machine.acknowledge(session_id)


@router.post("/{session_id}/end", response_model=TurnResult, summary="End the session")
async def end_session(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> TurnResult:
    return await machine.end_session(session_id)


@router.get("/{session_id}/history", response_model=list[Message], summary="Message history")
async def get_history(
    session_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    machine: SessionStateMachine = Depends(get_session_machine),
) -> list[Message]:
    return await machine.get_history(session_id, limit)


@router.delete("/{session_id}/history", response_model=ClearHistoryResponse, summary="Clear history")
async def clear_history(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> ClearHistoryResponse:
    cleared = await machine.clear_history(session_id)
    return ClearHistoryResponse(session_id=session_id, cleared=cleared)


@router.get("/{session_id}/suggestions", response_model=list[ContextualSuggestion], summary="Suggested next actions")
async def get_suggestions(
    session_id: str,
    limit: Optional[int] = Query(None, ge=1, le=10),
    machine: SessionStateMachine = Depends(get_session_machine),
) -> list[ContextualSuggestion]:
    return await machine.get_suggestions(session_id, limit)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a session")
async def delete_session(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> None:
    await machine.delete_session(session_id)


# ─── Workflows ──────────────────────────────────────────────────────────────

@router.get("/{session_id}/workflow", response_model=WorkflowResponse, summary="Active workflow")
async def get_workflow(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> WorkflowResponse:
    workflow = await machine.get_workflow(session_id)
    return _workflow_response(workflow, active=workflow is not None)


@router.post(
    "/{session_id}/workflow",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a workflow",
)
async def start_workflow(
    session_id: str,
    payload: WorkflowStart,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> WorkflowResponse:
    workflow = await machine.start_workflow(session_id, payload.template_id, payload.variables)
    return _workflow_response(workflow, active=True)


@router.post("/{session_id}/workflow/advance", response_model=WorkflowResponse, summary="Complete the current step")
async def advance_workflow(
    session_id: str,
    payload: WorkflowAdvance = WorkflowAdvance(),
    machine: SessionStateMachine = Depends(get_session_machine),
) -> WorkflowResponse:
    workflow = await machine.advance_workflow(session_id, payload.result)
    return _workflow_response(workflow, active=not workflow.is_finished)


@router.post("/{session_id}/workflow/skip", response_model=WorkflowResponse, summary="Skip the current step")
async def skip_workflow_step(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> WorkflowResponse:
    workflow = await machine.skip_workflow_step(session_id)
    return _workflow_response(workflow, active=not workflow.is_finished)


@router.delete("/{session_id}/workflow", response_model=WorkflowResponse, summary="Abandon the workflow")
async def abandon_workflow(
    session_id: str,
    machine: SessionStateMachine = Depends(get_session_machine),
) -> WorkflowResponse:
    workflow = await machine.abandon_workflow(session_id)
    return _workflow_response(workflow, active=False)
