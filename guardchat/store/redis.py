"""
Redis Context Store.

Layout, under REDIS_KEY_PREFIX:

    <prefix>:session:<id>   SessionState JSON
    <prefix>:context:<id>   context fields JSON
    <prefix>:messages:<id>  list of Message JSON, oldest first
    <prefix>:seq:<id>       INCR counter handing out message sequence numbers
    <prefix>:sessions       sorted set of session ids scored by last activity

Every key of a session gets a sliding TTL on write.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from redis.exceptions import RedisError

from guardchat.conversation.models import (
    Message,
    MessageDraft,
    SessionPreferences,
    SessionState,
    next_timestamp,
)
from guardchat.core import redis_client
from guardchat.core.config import settings
from guardchat.core.exceptions import SessionNotFoundError, StorageUnavailableError
from guardchat.core.logging import get_logger
from guardchat.store.base import ContextStore

logger = get_logger(__name__)

_BACKEND_ERRORS = (RedisError, ConnectionError, OSError)


def _score(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class RedisContextStore(ContextStore):
    backend_name = "redis"

    def __init__(
        self,
        redis=None,
        url: Optional[str] = None,
        key_prefix: str = "guardchat",
        ttl_seconds: int = 86400,
        max_sessions: int = 1000,
        max_messages_per_session: int = 500,
    ):
        super().__init__(max_sessions, max_messages_per_session)
        self._redis = redis
        self.url = url or settings.REDIS_URL
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    async def _client(self):
        if self._redis is not None:
            return self._redis
        return await redis_client.get_redis(self.url, self.key_prefix)

    def _key(self, kind: str, session_id: str | None = None) -> str:
        if session_id is None:
            return f"{self.key_prefix}:{kind}"
        return f"{self.key_prefix}:{kind}:{session_id}"

    def _session_keys(self, session_id: str) -> list[str]:
        return [self._key(kind, session_id) for kind in ("session", "context", "messages", "seq")]

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[Any]:
        try:
            yield await self._client()
        except _BACKEND_ERRORS as e:
            logger.error(
                "Context store operation failed",
                extra_data={"backend": self.backend_name, "operation": operation, "error": str(e)}
            )
            raise StorageUnavailableError(self.backend_name, operation, str(e)) from e

    async def _read(self, operation: str, query):
        try:
            async with self._transaction(operation) as r:
                return await query(r)
        except StorageUnavailableError:
            return None

    async def _touch(self, r, session_id: str, last_activity: datetime) -> None:
        await r.zadd(self._key("sessions"), {session_id: _score(last_activity)})
        for key in self._session_keys(session_id):
            await r.expire(key, self.ttl_seconds)

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

        async with self._transaction("create_session") as r:
            await self._evict_over_capacity(r, incoming=1)
            await r.set(self._key("session", session.session_id), session.model_dump_json())
            await r.set(self._key("context", session.session_id), "{}")
            await r.delete(self._key("messages", session.session_id), self._key("seq", session.session_id))
            await self._touch(r, session.session_id, session.last_activity)

        logger.debug(
            "Session created",
            extra_data={"session_id": session.session_id, "user_id": user_id, "backend": self.backend_name}
        )
        return session

    async def get_session(self, session_id: str) -> Optional[SessionState]:
        async def query(r):
            raw = await r.get(self._key("session", session_id))
            return SessionState.model_validate_json(raw) if raw else None

        return await self._read("get_session", query)

    async def update_session(self, session_id: str, **updates: Any) -> SessionState:
        async with self._transaction("update_session") as r:
            raw = await r.get(self._key("session", session_id))
            if raw is None:
                raise SessionNotFoundError(session_id)
            merged = SessionState.model_validate({**json.loads(raw), **updates})
            await r.set(self._key("session", session_id), merged.model_dump_json())
            await self._touch(r, session_id, merged.last_activity)
        return merged

    async def delete_session(self, session_id: str) -> bool:
        async with self._transaction("delete_session") as r:
            existed = await r.get(self._key("session", session_id)) is not None
            await self._delete_sessions(r, [session_id])
        return existed

    async def list_sessions(self, active_only: bool = False) -> list[SessionState]:
        async def query(r):
            session_ids = await r.zrange(self._key("sessions"), 0, -1)
            sessions = []
            for session_id in reversed(session_ids):
                raw = await r.get(self._key("session", session_id))
                if raw is None:
                    # TTL פג, מנקים את האינדקס
                    await r.zrem(self._key("sessions"), session_id)
                    continue
                session = SessionState.model_validate_json(raw)
                if session.is_active or not active_only:
                    sessions.append(session)
            return sessions

        return await self._read("list_sessions", query) or []

    # Messages ---------------------------------------------------------

    async def add_message(self, session_id: str, draft: MessageDraft) -> Message:
        async with self._transaction("add_message") as r:
            raw = await r.get(self._key("session", session_id))
            if raw is None:
                raise SessionNotFoundError(session_id)
            session = SessionState.model_validate_json(raw)

            sequence = await r.incr(self._key("seq", session_id))
            message = draft.seal(session_id, sequence, next_timestamp(session.last_activity))

            messages_key = self._key("messages", session_id)
            await r.rpush(messages_key, message.model_dump_json())
            await r.ltrim(messages_key, -self.max_messages_per_session, -1)

            session = session.model_copy(update={"last_activity": message.timestamp})
            await r.set(self._key("session", session_id), session.model_dump_json())
            await self._touch(r, session_id, message.timestamp)
        return message

    async def get_messages(self, session_id: str, limit: Optional[int] = None) -> list[Message]:
        if limit is not None and limit <= 0:
            return []

        async def query(r):
            start = -limit if limit is not None else 0
            raw_messages = await r.lrange(self._key("messages", session_id), start, -1)
            return [Message.model_validate_json(raw) for raw in raw_messages]

        return await self._read("get_messages", query) or []

    async def clear_messages(self, session_id: str) -> int:
        async with self._transaction("clear_messages") as r:
            messages_key = self._key("messages", session_id)
            count = await r.llen(messages_key)
            await r.delete(messages_key)
        return count

    # Context ----------------------------------------------------------

    async def _get_context_fields(self, session_id: str) -> Optional[dict[str, Any]]:
        async with self._transaction("get_context") as r:
            if await r.get(self._key("session", session_id)) is None:
                return None
            raw = await r.get(self._key("context", session_id))
            return json.loads(raw) if raw else {}

    async def _put_context_fields(self, session_id: str, fields: dict[str, Any]) -> None:
        async with self._transaction("update_context") as r:
            if await r.get(self._key("session", session_id)) is None:
                raise SessionNotFoundError(session_id)
            await r.set(self._key("context", session_id), json.dumps(fields, default=str))
            for key in self._session_keys(session_id):
                await r.expire(key, self.ttl_seconds)

    # Maintenance ------------------------------------------------------

    async def cleanup(self, older_than: datetime) -> int:
        async with self._transaction("cleanup") as r:
            stale_ids = await r.zrangebyscore(self._key("sessions"), "-inf", f"({_score(older_than)}")
            if stale_ids:
                await self._delete_sessions(r, list(stale_ids))

        if stale_ids:
            logger.info(
                "Cleaned up stale sessions",
                extra_data={"deleted": len(stale_ids), "older_than": older_than.isoformat(), "backend": self.backend_name}
            )
        return len(stale_ids)

    async def get_statistics(self) -> dict[str, Any]:
        async def query(r):
            session_ids = await r.zrange(self._key("sessions"), 0, -1)
            total_messages = 0
            active = 0
            for session_id in session_ids:
                total_messages += await r.llen(self._key("messages", session_id))
                raw = await r.get(self._key("session", session_id))
                if raw and SessionState.model_validate_json(raw).is_active:
                    active += 1
            return {
                "backend": self.backend_name,
                "total_sessions": len(session_ids),
                "active_sessions": active,
                "total_messages": total_messages,
                "average_messages_per_session": (
                    round(total_messages / len(session_ids), 2) if session_ids else 0.0
                ),
                "ttl_seconds": self.ttl_seconds,
            }

        stats = await self._read("get_statistics", query)
        return stats or {"backend": self.backend_name, "available": False}

    async def _restore(
        self,
        session: SessionState,
        context_fields: dict[str, Any],
        messages: list[Message],
    ) -> None:
        session_id = session.session_id
        async with self._transaction("import_session") as r:
            if await r.get(self._key("session", session_id)) is None:
                await self._evict_over_capacity(r, incoming=1)
            await r.delete(*self._session_keys(session_id))
            await r.set(self._key("session", session_id), session.model_dump_json())
            await r.set(self._key("context", session_id), json.dumps(context_fields, default=str))
            history = messages[-self.max_messages_per_session:]
            if history:
                await r.rpush(
                    self._key("messages", session_id),
                    *[m.model_copy(update={"session_id": session_id}).model_dump_json() for m in history],
                )
            await r.set(self._key("seq", session_id), str(messages[-1].sequence if messages else 0))
            await self._touch(r, session_id, session.last_activity)

    async def _delete_sessions(self, r, session_ids: list[str]) -> None:
        for session_id in session_ids:
            await r.delete(*self._session_keys(session_id))
            await r.zrem(self._key("sessions"), session_id)

    async def _evict_over_capacity(self, r, incoming: int) -> None:
        count = await r.zcard(self._key("sessions"))
        overflow = count + incoming - self.max_sessions
        if overflow <= 0:
            return
        oldest_ids = await r.zrange(self._key("sessions"), 0, overflow - 1)
        await self._delete_sessions(r, list(oldest_ids))
        logger.info(
            "Evicted least recently active sessions",
            extra_data={"evicted": list(oldest_ids), "max_sessions": self.max_sessions}
        )

    async def close(self) -> None:
        if self._redis is None:
            await redis_client.close_redis(self.url)
