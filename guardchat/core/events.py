"""
Session event bus.

The rendering layer (terminal REPL, SSE endpoint) subscribes to typed
session events instead of polling the state machine. Each subscriber gets
its own queue so a slow consumer never blocks the engine.
"""
import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from guardchat.core.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    STATE_CHANGED = "state_changed"
    MESSAGE_ADDED = "message_added"
    CONFIRMATION_REQUESTED = "confirmation_requested"
    CONFIRMATION_RESOLVED = "confirmation_resolved"
    CLARIFICATION_REQUESTED = "clarification_requested"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_STEP_COMPLETED = "workflow_step_completed"
    WORKFLOW_STEP_SKIPPED = "workflow_step_skipped"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_ABANDONED = "workflow_abandoned"
    SUGGESTIONS_UPDATED = "suggestions_updated"
    STORAGE_DEGRADED = "storage_degraded"
    SESSION_ENDED = "session_ended"


class SessionEvent(BaseModel):
    """A single notification about one session"""

    type: EventType
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Fan-out of SessionEvents to subscriber queues.

    A subscriber may ask for the events of a single session; otherwise it
    receives everything.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[asyncio.Queue[SessionEvent], str | None]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, session_id: str | None = None) -> asyncio.Queue[SessionEvent]:
        """Create a new subscriber queue, optionally filtered to one session."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._subscribers.append((queue, session_id))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SessionEvent]) -> None:
        self._subscribers = [(q, sid) for q, sid in self._subscribers if q is not queue]

    def emit(self, event: SessionEvent) -> None:
        """Deliver an event to every matching subscriber without awaiting them."""
        for queue, session_filter in self._subscribers:
            if session_filter is not None and session_filter != event.session_id:
                continue
            queue.put_nowait(event)

        logger.debug(
            "Session event emitted",
            extra_data={
                "event_type": event.type.value,
                "session_id": event.session_id,
                "subscribers": len(self._subscribers),
            }
        )

    def publish(self, event_type: EventType, session_id: str, **data: Any) -> SessionEvent:
        """Build and emit an event in one call"""
        event = SessionEvent(type=event_type, session_id=session_id, data=data)
        self.emit(event)
        return event
