"""
Conversation data model.

Sessions, messages, rolling context, workflows and the records exchanged
with the intent classifier and command executor. All of these cross a
persistence or network boundary, so they are pydantic models.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from guardchat.conversation.states import ChatState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


class MessageType(str, Enum):
    USER_INPUT = "user_input"
    ASSISTANT_RESPONSE = "assistant_response"
    SYSTEM_MESSAGE = "system_message"
    COMMAND_EXECUTION = "command_execution"
    ERROR_MESSAGE = "error_message"
    CONFIRMATION_REQUEST = "confirmation_request"
    SUGGESTION = "suggestion"


class AuthenticationStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    EXPIRED = "expired"


OutputFormat = Literal["table", "json", "yaml", "text"]
SuggestionType = Literal["command", "workflow", "help", "clarification"]


# ============================================================================
# Collaborator records
# ============================================================================


class Entity(BaseModel):
    """A value extracted from user text (ip_address, domain, threat_id, ...)"""

    type: str
    value: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class Intent(BaseModel):
    """Classifier output for one piece of user text"""

    type: str
    confidence: float = Field(ge=0.0, le=1.0)
    entities: list[Entity] = Field(default_factory=list)
    ambiguous: bool = False
    alternatives: list[str] = Field(default_factory=list)
    raw_text: Optional[str] = None


class ParsedCommand(BaseModel):
    """A concrete command resolved from an intent"""

    command: str
    intent_type: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    destructive: bool = False
    description: Optional[str] = None
    preview: Optional[str] = None


class ExecutionResult(BaseModel):
    """Outcome of one executor call"""

    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    execution_time_ms: float = 0.0


# ============================================================================
# Messages
# ============================================================================


class Message(BaseModel):
    """One history entry. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    sequence: int = Field(ge=1)
    type: MessageType
    content: str
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    intent: Optional[Intent] = None
    command: Optional[ParsedCommand] = None
    execution_result: Optional[ExecutionResult] = None
    reply_to: Optional[str] = None
    thread_id: Optional[str] = None

    @staticmethod
    def make_id(sequence: int) -> str:
        # zero-padded so lexical order follows arrival order
        return f"msg_{sequence:08d}_{uuid.uuid4().hex[:8]}"


class MessageDraft(BaseModel):
    """Everything about a message except what the store assigns"""

    type: MessageType
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    intent: Optional[Intent] = None
    command: Optional[ParsedCommand] = None
    execution_result: Optional[ExecutionResult] = None
    reply_to: Optional[str] = None
    thread_id: Optional[str] = None

    def seal(self, session_id: str, sequence: int, timestamp: datetime) -> Message:
        return Message(
            id=Message.make_id(sequence),
            session_id=session_id,
            sequence=sequence,
            timestamp=timestamp,
            **self.model_dump(),
        )


def next_timestamp(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Wall-clock time that never goes backwards relative to the previous message"""
    now = now or utcnow()
    if previous is not None and now < previous:
        return previous
    return now


# ============================================================================
# Session
# ============================================================================


class SessionPreferences(BaseModel):
    output_format: OutputFormat = "table"
    verbose_mode: bool = False
    confirm_destructive: bool = True
    suggest_commands: bool = True
    explain_commands: bool = True


class PendingConfirmation(BaseModel):
    """An open confirmation gate in front of a destructive command"""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    prompt: str
    command: ParsedCommand
    timeout_ms: int = Field(ge=1)
    created_at: datetime

    def remaining_ms(self, now: datetime) -> int:
        elapsed_ms = (now - self.created_at).total_seconds() * 1000
        return int(self.timeout_ms - elapsed_ms)


class ClarificationRequest(BaseModel):
    prompt: str
    original_input: str
    intent: Optional[Intent] = None
    alternatives: list[str] = Field(default_factory=list)
    message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class SessionState(BaseModel):
    session_id: str = Field(default_factory=new_session_id)
    user_id: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    current_topic: Optional[str] = None
    active_command: Optional[str] = None
    pending_confirmation: Optional[PendingConfirmation] = None
    preferences: SessionPreferences = Field(default_factory=SessionPreferences)
    entities: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    authentication_status: AuthenticationStatus = AuthenticationStatus.UNAUTHENTICATED
    permissions: list[str] = Field(default_factory=list)
    last_auth_check: Optional[datetime] = None


# ============================================================================
# Workflows
# ============================================================================


class WorkflowStep(BaseModel):
    step_id: str
    name: str
    description: str
    command: Optional[str] = None
    completed: bool = False
    skipped: bool = False
    result: Optional[dict[str, Any]] = None
    finished_at: Optional[datetime] = None

    @property
    def is_done(self) -> bool:
        return self.completed or self.skipped


class WorkflowProgress(BaseModel):
    completed: int
    skipped: int
    total: int
    percentage: float
    current_step_name: Optional[str] = None


class WorkflowState(BaseModel):
    workflow_id: str
    name: str
    description: str
    current_step: int = 0
    total_steps: int
    step_data: list[WorkflowStep]
    start_time: datetime = Field(default_factory=utcnow)
    estimated_duration: Optional[int] = None
    variables: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_step_bounds(self) -> "WorkflowState":
        if self.total_steps != len(self.step_data):
            raise ValueError("total_steps must match the number of steps")
        if not 0 <= self.current_step <= self.total_steps:
            raise ValueError("current_step out of range")
        return self

    @property
    def is_finished(self) -> bool:
        return self.current_step >= self.total_steps

    @property
    def current(self) -> Optional[WorkflowStep]:
        if self.is_finished:
            return None
        return self.step_data[self.current_step]

    def progress(self) -> WorkflowProgress:
        completed = sum(1 for s in self.step_data if s.completed)
        skipped = sum(1 for s in self.step_data if s.skipped)
        done = completed + skipped
        current = self.current
        return WorkflowProgress(
            completed=completed,
            skipped=skipped,
            total=self.total_steps,
            percentage=round(done / self.total_steps * 100, 1) if self.total_steps else 100.0,
            current_step_name=current.name if current else None,
        )


# ============================================================================
# Context
# ============================================================================


def _push_bounded(window: list, item: Any, capacity: int) -> list:
    window = [*window, item]
    if len(window) > capacity:
        window = window[len(window) - capacity:]
    return window


class ConversationContext(BaseModel):
    """Rolling context of one session. Windows are ordered oldest -> newest."""

    session: SessionState
    messages: list[Message] = Field(default_factory=list)
    recent_intents: list[str] = Field(default_factory=list)
    recent_entities: list[Entity] = Field(default_factory=list)
    recent_commands: list[str] = Field(default_factory=list)
    current_workflow: Optional[str] = None
    workflow_step: Optional[int] = None
    workflow_data: Optional[WorkflowState] = None
    last_error: Optional[str] = None
    error_count: int = 0
    average_response_time: float = 0.0
    total_interactions: int = 0

    # fields persisted separately from the session record and history
    PERSISTED_FIELDS: ClassVar[frozenset[str]] = frozenset({
        "recent_intents",
        "recent_entities",
        "recent_commands",
        "current_workflow",
        "workflow_step",
        "workflow_data",
        "last_error",
        "error_count",
        "average_response_time",
        "total_interactions",
    })

    @model_validator(mode="after")
    def check_workflow_pointer(self) -> "ConversationContext":
        if (self.current_workflow is None) != (self.workflow_step is None):
            raise ValueError("workflow_step must be set exactly when current_workflow is set")
        if self.workflow_data is not None and self.workflow_step is not None:
            if not 0 <= self.workflow_step < self.workflow_data.total_steps:
                raise ValueError("workflow_step out of range")
        return self

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def record_intent(self, intent_type: str, capacity: int) -> None:
        self.recent_intents = _push_bounded(self.recent_intents, intent_type, capacity)

    def record_entity(self, entity: Entity, capacity: int) -> None:
        self.recent_entities = _push_bounded(self.recent_entities, entity, capacity)

    def record_command(self, command: str, capacity: int) -> None:
        self.recent_commands = _push_bounded(self.recent_commands, command, capacity)

    def record_response_time(self, elapsed_ms: float) -> None:
        total = self.total_interactions
        self.average_response_time = (self.average_response_time * total + elapsed_ms) / (total + 1)
        self.total_interactions = total + 1

    def persisted_fields(self) -> dict[str, Any]:
        return self.model_dump(mode="json", include=set(self.PERSISTED_FIELDS))


# ============================================================================
# Suggestions
# ============================================================================


class ContextualSuggestion(BaseModel):
    type: SuggestionType
    content: str
    reasoning: str
    confidence: float = Field(ge=0.0, le=1.0)
    actionable: bool = True
    follow_up: Optional[str] = None
    source_intent: Optional[str] = None


# ============================================================================
# Read-only views for the rendering layer
# ============================================================================


class PendingConfirmationView(BaseModel):
    prompt: str
    command: str
    timeout_ms: int
    remaining_ms: int


class ContextSummary(BaseModel):
    recent_intents: list[str]
    recent_entities: list[Entity]
    recent_commands: list[str]
    current_workflow: Optional[str] = None
    workflow_step: Optional[int] = None
    workflow_progress: Optional[WorkflowProgress] = None
    last_error: Optional[str] = None
    error_count: int = 0
    total_interactions: int = 0
    average_response_time: float = 0.0
    message_count: int = 0


class SessionSnapshot(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    state: ChatState
    pending_confirmation: Optional[PendingConfirmationView] = None
    clarification_prompt: Optional[str] = None
    context: ContextSummary
    suggestions: list[ContextualSuggestion] = Field(default_factory=list)
    degraded: bool = False
    last_activity: datetime


class TurnResult(BaseModel):
    """What one call into the state machine produced"""

    session_id: str
    state: ChatState
    messages: list[Message] = Field(default_factory=list)
    suggestions: list[ContextualSuggestion] = Field(default_factory=list)
    execution_result: Optional[ExecutionResult] = None
    warning: Optional[str] = None
