"""
In-memory Context Store.

Default backend for the interactive CLI and for tests. Bounded: past
`max_sessions` the least recently active session is evicted, and each
history keeps its newest `max_messages_per_session` messages.
"""
from datetime import datetime
from typing import Any, Optional

from guardchat.conversation.models import (
    Message,
    MessageDraft,
    SessionPreferences,
    SessionState,
    next_timestamp,
)
from guardchat.core.exceptions import SessionNotFoundError
from guardchat.core.logging import get_logger
from guardchat.store.base import ContextStore

logger = get_logger(__name__)


class InMemoryContextStore(ContextStore):
    backend_name = "memory"

    def __init__(self, max_sessions: int = 1000, max_messages_per_session: int = 500):
        super().__init__(max_sessions, max_messages_per_session)
        self._sessions: dict[str, SessionState] = {}
        self._contexts: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, list[Message]] = {}
        self._sequences: dict[str, int] = {}

    async def create_session(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        preferences: Optional[SessionPreferences] = None,
    ) -> SessionState:
        if len(self._sessions) >= self.max_sessions:
            self._evict_oldest_session()

        fields: dict[str, Any] = {"user_id": user_id}
        if session_id:
            fields["session_id"] = session_id
        if preferences:
            fields["preferences"] = preferences
        session = SessionState(**fields)

        self._sessions[session.session_id] = session
        self._contexts[session.session_id] = {}
        self._messages[session.session_id] = []
        self._sequences[session.session_id] = 0

        logger.debug(
            "Session created",
            extra_data={"session_id": session.session_id, "user_id": user_id}
        )
        return session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[SessionState]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def update_session(self, session_id: str, **updates: Any) -> SessionState:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        merged = SessionState.model_validate({**session.model_dump(), **updates})
        self._sessions[session_id] = merged
        return merged.model_copy(deep=True)

    async def delete_session(self, session_id: str) -> bool:
        existed = self._sessions.pop(session_id, None) is not None
        self._contexts.pop(session_id, None)
        self._messages.pop(session_id, None)
        self._sequences.pop(session_id, None)
        return existed

    async def list_sessions(self, active_only: bool = False) -> list[SessionState]:
        sessions = [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.is_active or not active_only
        ]
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    async def add_message(self, session_id: str, draft: MessageDraft) -> Message:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        history = self._messages[session_id]
        sequence = self._sequences[session_id] + 1
        previous = history[-1].timestamp if history else None
        message = draft.seal(session_id, sequence, next_timestamp(previous))

        self._sequences[session_id] = sequence
        history.append(message)
        if len(history) > self.max_messages_per_session:
            del history[: len(history) - self.max_messages_per_session]

        self._sessions[session_id] = session.model_copy(update={"last_activity": message.timestamp})
        return message

    async def get_messages(self, session_id: str, limit: Optional[int] = None) -> list[Message]:
        history = self._messages.get(session_id, [])
        if limit is not None:
            return list(history[-limit:]) if limit > 0 else []
        return list(history)

    async def clear_messages(self, session_id: str) -> int:
        history = self._messages.get(session_id)
        if history is None:
            return 0
        count = len(history)
        history.clear()
        # sequence keeps counting so ids stay unique after a clear
        return count

    async def _get_context_fields(self, session_id: str) -> Optional[dict[str, Any]]:
        if session_id not in self._sessions:
            return None
        return dict(self._contexts.get(session_id, {}))

    async def _put_context_fields(self, session_id: str, fields: dict[str, Any]) -> None:
        if session_id not in self._sessions:
            raise SessionNotFoundError(session_id)
        self._contexts[session_id] = dict(fields)

    async def cleanup(self, older_than: datetime) -> int:
        stale = [sid for sid, s in self._sessions.items() if s.last_activity < older_than]
        for session_id in stale:
            await self.delete_session(session_id)
        if stale:
            logger.info(
                "Cleaned up stale sessions",
                extra_data={"deleted": len(stale), "older_than": older_than.isoformat()}
            )
        return len(stale)

    async def get_statistics(self) -> dict[str, Any]:
        sessions = list(self._sessions.values())
        total_messages = sum(len(h) for h in self._messages.values())
        return {
            "backend": self.backend_name,
            "total_sessions": len(sessions),
            "active_sessions": sum(1 for s in sessions if s.is_active),
            "total_messages": total_messages,
            "average_messages_per_session": (
                round(total_messages / len(sessions), 2) if sessions else 0.0
            ),
            "oldest_session": min((s.start_time for s in sessions), default=None),
            "newest_session": max((s.start_time for s in sessions), default=None),
        }

    async def _restore(
        self,
        session: SessionState,
        context_fields: dict[str, Any],
        messages: list[Message],
    ) -> None:
        if session.session_id not in self._sessions and len(self._sessions) >= self.max_sessions:
            self._evict_oldest_session()
        history = [m.model_copy(update={"session_id": session.session_id}) for m in messages]
        self._sessions[session.session_id] = session.model_copy(deep=True)
        self._contexts[session.session_id] = dict(context_fields)
        self._messages[session.session_id] = history[-self.max_messages_per_session:]
        self._sequences[session.session_id] = history[-1].sequence if history else 0

    def _evict_oldest_session(self) -> None:
        if not self._sessions:
            return
        oldest = min(self._sessions.values(), key=lambda s: s.last_activity)
        self._sessions.pop(oldest.session_id)
        self._contexts.pop(oldest.session_id, None)
        self._messages.pop(oldest.session_id, None)
        self._sequences.pop(oldest.session_id, None)
        logger.info(
            "Evicted least recently active session",
            extra_data={"session_id": oldest.session_id, "max_sessions": self.max_sessions}
        )
