"""
Context Store interface.

Persistence-agnostic CRUD over sessions, message history and rolling
context. Failure contract shared by every backend:

- reads return "not found" (None / empty list) when the backend is
  unreachable;
- writes raise StorageUnavailableError.

Message ordering is strictly arrival order per session: each message gets
the next sequence number, an id unique within the session and a timestamp
that never goes backwards.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from guardchat.conversation.models import (
    ConversationContext,
    Message,
    MessageDraft,
    SessionPreferences,
    SessionState,
)
from guardchat.core.exceptions import (
    SessionNotFoundError,
    StorageUnavailableError,
    ValidationException,
)

EXPORT_FORMAT_VERSION = 1


class ContextStore(ABC):
    """Abstract context store"""

    backend_name = "abstract"

    def __init__(self, max_sessions: int = 1000, max_messages_per_session: int = 500):
        self.max_sessions = max_sessions
        self.max_messages_per_session = max_messages_per_session

    # Sessions ---------------------------------------------------------

    @abstractmethod
    async def create_session(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        preferences: Optional[SessionPreferences] = None,
    ) -> SessionState:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionState]:
        ...

    @abstractmethod
    async def update_session(self, session_id: str, **updates: Any) -> SessionState:
        """Partial merge of `updates` into the stored SessionState"""

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        ...

    @abstractmethod
    async def list_sessions(self, active_only: bool = False) -> list[SessionState]:
        ...

    # Messages ---------------------------------------------------------

    @abstractmethod
    async def add_message(self, session_id: str, draft: MessageDraft) -> Message:
        ...

    @abstractmethod
    async def get_messages(self, session_id: str, limit: Optional[int] = None) -> list[Message]:
        """Last `limit` messages (all when None), chronological"""

    @abstractmethod
    async def clear_messages(self, session_id: str) -> int:
        ...

    async def search_messages(self, session_id: str, query: str, limit: int = 20) -> list[Message]:
        """Case-insensitive match on content or message type, newest first"""
        needle = query.lower()
        matches = [
            message
            for message in await self.get_messages(session_id)
            if needle in message.content.lower() or needle in message.type.value
        ]
        return list(reversed(matches))[:limit]

    # Context ----------------------------------------------------------

    @abstractmethod
    async def _get_context_fields(self, session_id: str) -> Optional[dict[str, Any]]:
        """Stored context fields, None when the session is unknown.

        Raises StorageUnavailableError; the public readers translate that
        into "not found".
        """

    @abstractmethod
    async def _put_context_fields(self, session_id: str, fields: dict[str, Any]) -> None:
        ...

    async def get_context(
        self,
        session_id: str,
        message_limit: Optional[int] = None,
    ) -> Optional[ConversationContext]:
        session = await self.get_session(session_id)
        if session is None:
            return None
        try:
            fields = await self._get_context_fields(session_id) or {}
        except StorageUnavailableError:
            return None
        messages = await self.get_messages(session_id, message_limit)
        return ConversationContext.model_validate(
            {**fields, "session": session, "messages": messages}
        )

    async def update_context(self, session_id: str, **updates: Any) -> ConversationContext:
        """Partial merge of context-level fields; session and history are not touched"""
        unknown = set(updates) - ConversationContext.PERSISTED_FIELDS
        if unknown:
            raise ValidationException(
                f"Unknown context fields: {', '.join(sorted(unknown))}",
                field="context",
            )
        current = await self._get_context_fields(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)

        # ולידציה של המיזוג לפני כתיבה, כדי לא לשמור context שבור
        merged = ConversationContext.model_validate(
            {**current, **updates, "session": SessionState(session_id=session_id)}
        )
        await self._put_context_fields(session_id, merged.persisted_fields())
        return merged

    # Entities / variables ---------------------------------------------

    async def set_entity(self, session_id: str, name: str, value: Any) -> None:
        session = await self._require_session(session_id)
        await self.update_session(session_id, entities={**session.entities, name: value})

    async def get_entity(self, session_id: str, name: str) -> Any:
        session = await self.get_session(session_id)
        return session.entities.get(name) if session else None

    async def set_variable(self, session_id: str, name: str, value: Any) -> None:
        session = await self._require_session(session_id)
        await self.update_session(session_id, variables={**session.variables, name: value})

    async def get_variable(self, session_id: str, name: str) -> Any:
        session = await self.get_session(session_id)
        return session.variables.get(name) if session else None

    # Maintenance ------------------------------------------------------

    @abstractmethod
    async def cleanup(self, older_than: datetime) -> int:
        """Delete sessions inactive since before `older_than`; returns the count"""

    @abstractmethod
    async def get_statistics(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def _restore(
        self,
        session: SessionState,
        context_fields: dict[str, Any],
        messages: list[Message],
    ) -> None:
        ...

    async def export_session(self, session_id: str) -> Optional[dict[str, Any]]:
        context = await self.get_context(session_id)
        if context is None:
            return None
        return {
            "version": EXPORT_FORMAT_VERSION,
            "session": context.session.model_dump(mode="json"),
            "context": context.persisted_fields(),
            "messages": [m.model_dump(mode="json") for m in context.messages],
        }

    async def import_session(self, data: dict[str, Any]) -> SessionState:
        if data.get("version") != EXPORT_FORMAT_VERSION:
            raise ValidationException("Unsupported export format", field="version")
        session = SessionState.model_validate(data["session"])
        messages = [Message.model_validate(m) for m in data.get("messages", [])]
        sequences = [m.sequence for m in messages]
        if sequences != sorted(set(sequences)):
            raise ValidationException("Message sequence must be strictly increasing", field="messages")
        context_fields = ConversationContext.model_validate(
            {**data.get("context", {}), "session": session}
        ).persisted_fields()
        await self._restore(session, context_fields, messages)
        return session

    async def _require_session(self, session_id: str) -> SessionState:
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def close(self) -> None:
        """Release backend resources"""
