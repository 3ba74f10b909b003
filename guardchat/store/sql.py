"""
SQLAlchemy (async) Context Store.

Sessions live in `conversation_sessions` with their SessionState and context
as JSON; history lives in `conversation_messages`, one row per message. A
per-session counter on the session row hands out message sequence numbers
inside the same transaction that inserts the message.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guardchat.conversation.models import (
    Message,
    MessageDraft,
    SessionPreferences,
    SessionState,
    next_timestamp,
)
from guardchat.core.exceptions import SessionNotFoundError, StorageUnavailableError
from guardchat.core.logging import get_logger
from guardchat.db.models import ConversationMessageRecord, ConversationSessionRecord
from guardchat.store.base import ContextStore

logger = get_logger(__name__)


def _naive_utc(value: datetime) -> datetime:
    """עמודות DateTime נשמרות כ-UTC נאיבי (תואם SQLite ו-PostgreSQL)"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SQLAlchemyContextStore(ContextStore):
    backend_name = "sql"

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        max_sessions: int = 1000,
        max_messages_per_session: int = 500,
    ):
        super().__init__(max_sessions, max_messages_per_session)
        if session_factory is None:
            from guardchat.db.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """DB session whose driver errors surface as StorageUnavailableError"""
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(
                "Context store operation failed",
                extra_data={"backend": self.backend_name, "operation": operation, "error": str(e)}
            )
            raise StorageUnavailableError(self.backend_name, operation, str(e)) from e

    async def _read(self, operation: str, query):
        """Run a read; backend errors are reported as "not found" (None)."""
        try:
            async with self._transaction(operation) as db:
                return await query(db)
        except StorageUnavailableError:
            return None

    # Sessions ---------------------------------------------------------

    async def create_session(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        preferences: Optional[SessionPreferences] = None,
    ) -> SessionState:
        fields: dict[str, Any] = {"user_id": user_id}
        if session_id:
            fields["session_id"] = session_id
        if preferences:
            fields["preferences"] = preferences
        session = SessionState(**fields)

        async with self._transaction("create_session") as db:
            await self._evict_over_capacity(db, incoming=1)
            db.add(ConversationSessionRecord(
                session_id=session.session_id,
                user_id=session.user_id,
                is_active=session.is_active,
                state_data=session.model_dump(mode="json"),
                context_data={},
                message_seq=0,
                created_at=_naive_utc(session.start_time),
                last_activity_at=_naive_utc(session.last_activity),
            ))
            await db.commit()

        logger.debug(
            "Session created",
            extra_data={"session_id": session.session_id, "user_id": user_id, "backend": self.backend_name}
        )
        return session

    async def get_session(self, session_id: str) -> Optional[SessionState]:
        async def query(db: AsyncSession):
            record = await db.get(ConversationSessionRecord, session_id)
            return SessionState.model_validate(record.state_data) if record else None

        return await self._read("get_session", query)

    async def update_session(self, session_id: str, **updates: Any) -> SessionState:
        async with self._transaction("update_session") as db:
            record = await db.get(ConversationSessionRecord, session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            merged = SessionState.model_validate({**record.state_data, **updates})
            record.state_data = merged.model_dump(mode="json")
            record.user_id = merged.user_id
            record.is_active = merged.is_active
            record.last_activity_at = _naive_utc(merged.last_activity)
            await db.commit()
        return merged

    async def delete_session(self, session_id: str) -> bool:
        async with self._transaction("delete_session") as db:
            await db.execute(
                delete(ConversationMessageRecord).where(ConversationMessageRecord.session_id == session_id)
            )
            result = await db.execute(
                delete(ConversationSessionRecord).where(ConversationSessionRecord.session_id == session_id)
            )
            await db.commit()
        return result.rowcount > 0

    async def list_sessions(self, active_only: bool = False) -> list[SessionState]:
        async def query(db: AsyncSession):
            stmt = select(ConversationSessionRecord).order_by(
                ConversationSessionRecord.last_activity_at.desc()
            )
            if active_only:
                stmt = stmt.where(ConversationSessionRecord.is_active.is_(True))
            records = (await db.execute(stmt)).scalars().all()
            return [SessionState.model_validate(r.state_data) for r in records]

        return await self._read("list_sessions", query) or []

    # Messages ---------------------------------------------------------

    async def add_message(self, session_id: str, draft: MessageDraft) -> Message:
        async with self._transaction("add_message") as db:
            record = await db.get(ConversationSessionRecord, session_id, with_for_update=True)
            if record is None:
                raise SessionNotFoundError(session_id)

            session = SessionState.model_validate(record.state_data)
            sequence = record.message_seq + 1
            message = draft.seal(session_id, sequence, next_timestamp(session.last_activity))

            db.add(ConversationMessageRecord(
                message_id=message.id,
                session_id=session_id,
                sequence=sequence,
                type=message.type.value,
                content=message.content,
                payload=message.model_dump(mode="json"),
                created_at=_naive_utc(message.timestamp),
            ))
            record.message_seq = sequence
            record.state_data = session.model_copy(
                update={"last_activity": message.timestamp}
            ).model_dump(mode="json")
            record.last_activity_at = _naive_utc(message.timestamp)

            if sequence > self.max_messages_per_session:
                await db.execute(
                    delete(ConversationMessageRecord).where(
                        ConversationMessageRecord.session_id == session_id,
                        ConversationMessageRecord.sequence <= sequence - self.max_messages_per_session,
                    )
                )
            await db.commit()
        return message

    async def get_messages(self, session_id: str, limit: Optional[int] = None) -> list[Message]:
        if limit is not None and limit <= 0:
            return []

        async def query(db: AsyncSession):
            stmt = (
                select(ConversationMessageRecord.payload)
                .where(ConversationMessageRecord.session_id == session_id)
                .order_by(ConversationMessageRecord.sequence.desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            payloads = (await db.execute(stmt)).scalars().all()
            return [Message.model_validate(p) for p in reversed(payloads)]

        return await self._read("get_messages", query) or []

    async def clear_messages(self, session_id: str) -> int:
        async with self._transaction("clear_messages") as db:
            result = await db.execute(
                delete(ConversationMessageRecord).where(ConversationMessageRecord.session_id == session_id)
            )
            await db.commit()
        return result.rowcount

    # Context ----------------------------------------------------------

    async def _get_context_fields(self, session_id: str) -> Optional[dict[str, Any]]:
        async with self._transaction("get_context") as db:
            record = await db.get(ConversationSessionRecord, session_id)
            return dict(record.context_data or {}) if record else None

    async def _put_context_fields(self, session_id: str, fields: dict[str, Any]) -> None:
        async with self._transaction("update_context") as db:
            record = await db.get(ConversationSessionRecord, session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            # dict חדש כדי ש-SQLAlchemy יזהה שינוי בעמודת JSON
            record.context_data = dict(fields)
            await db.commit()

    # Maintenance ------------------------------------------------------

    async def cleanup(self, older_than: datetime) -> int:
        cutoff = _naive_utc(older_than)
        async with self._transaction("cleanup") as db:
            stale_ids = (await db.execute(
                select(ConversationSessionRecord.session_id).where(
                    ConversationSessionRecord.last_activity_at < cutoff
                )
            )).scalars().all()
            if stale_ids:
                await self._delete_sessions(db, list(stale_ids))
            await db.commit()

        if stale_ids:
            logger.info(
                "Cleaned up stale sessions",
                extra_data={"deleted": len(stale_ids), "older_than": older_than.isoformat(), "backend": self.backend_name}
            )
        return len(stale_ids)

    async def get_statistics(self) -> dict[str, Any]:
        async def query(db: AsyncSession):
            total_sessions = await db.scalar(select(func.count()).select_from(ConversationSessionRecord))
            active_sessions = await db.scalar(
                select(func.count()).select_from(ConversationSessionRecord).where(
                    ConversationSessionRecord.is_active.is_(True)
                )
            )
            total_messages = await db.scalar(select(func.count()).select_from(ConversationMessageRecord))
            oldest, newest = (await db.execute(
                select(
                    func.min(ConversationSessionRecord.created_at),
                    func.max(ConversationSessionRecord.created_at),
                )
            )).one()
            return {
                "backend": self.backend_name,
                "total_sessions": total_sessions or 0,
                "active_sessions": active_sessions or 0,
                "total_messages": total_messages or 0,
                "average_messages_per_session": (
                    round(total_messages / total_sessions, 2) if total_sessions else 0.0
                ),
                "oldest_session": oldest,
                "newest_session": newest,
            }

        stats = await self._read("get_statistics", query)
        return stats or {"backend": self.backend_name, "available": False}

    async def _restore(
        self,
        session: SessionState,
        context_fields: dict[str, Any],
        messages: list[Message],
    ) -> None:
        history = messages[-self.max_messages_per_session:]
        async with self._transaction("import_session") as db:
            existing = await db.get(ConversationSessionRecord, session.session_id)
            if existing is not None:
                db.expunge(existing)
                await self._delete_sessions(db, [session.session_id])
            else:
                await self._evict_over_capacity(db, incoming=1)
            db.add(ConversationSessionRecord(
                session_id=session.session_id,
                user_id=session.user_id,
                is_active=session.is_active,
                state_data=session.model_dump(mode="json"),
                context_data=dict(context_fields),
                message_seq=messages[-1].sequence if messages else 0,
                created_at=_naive_utc(session.start_time),
                last_activity_at=_naive_utc(session.last_activity),
            ))
            for message in history:
                message = message.model_copy(update={"session_id": session.session_id})
                db.add(ConversationMessageRecord(
                    message_id=message.id,
                    session_id=session.session_id,
                    sequence=message.sequence,
                    type=message.type.value,
                    content=message.content,
                    payload=message.model_dump(mode="json"),
                    created_at=_naive_utc(message.timestamp),
                ))
            await db.commit()

    async def _delete_sessions(self, db: AsyncSession, session_ids: list[str]) -> None:
        await db.execute(
            delete(ConversationMessageRecord).where(ConversationMessageRecord.session_id.in_(session_ids))
        )
        await db.execute(
            delete(ConversationSessionRecord).where(ConversationSessionRecord.session_id.in_(session_ids))
        )

    async def _evict_over_capacity(self, db: AsyncSession, incoming: int) -> None:
        count = await db.scalar(select(func.count()).select_from(ConversationSessionRecord)) or 0
        overflow = count + incoming - self.max_sessions
        if overflow <= 0:
            return
        oldest_ids = (await db.execute(
            select(ConversationSessionRecord.session_id)
            .order_by(ConversationSessionRecord.last_activity_at.asc())
            .limit(overflow)
        )).scalars().all()
        await self._delete_sessions(db, list(oldest_ids))
        logger.info(
            "Evicted least recently active sessions",
            extra_data={"evicted": list(oldest_ids), "max_sessions": self.max_sessions}
        )
