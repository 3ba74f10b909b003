"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Context stores (in-memory, aiosqlite-backed SQL, FakeRedis)
- Stub intent classifier and command executor
- A frozen clock for confirmation timeouts
- The session state machine and an HTTP client around the FastAPI app
"""
# משתני סביבה לפני ייבוא guardchat, ה-settings נטענים בזמן import
import os
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("CONTEXT_STORE_BACKEND", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key-for-testing-only")

import asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from guardchat.conversation.confirmation import ConfirmationManager
from guardchat.conversation.manager import SessionStateMachine
from guardchat.conversation.models import (
    ConversationContext,
    Entity,
    ExecutionResult,
    Intent,
    ParsedCommand,
)
from guardchat.core.events import EventBus
from guardchat.db.database import Base
from guardchat.store.memory import InMemoryContextStore
from guardchat.store.redis import RedisContextStore
from guardchat.store.sql import SQLAlchemyContextStore
import guardchat.db.models  # noqa: F401  רישום הטבלאות ב-metadata


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key-for-testing-only"}

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto


# ============================================================================
# Clock
# ============================================================================

class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ============================================================================
# Collaborators
# ============================================================================

KNOWN_INTENTS: dict[str, Intent] = {
    "system status": Intent(type="system_status", confidence=0.95),
    "system": Intent(type="system_status", confidence=0.9),
    "scan network 10.0.0.0/24": Intent(
        type="network_scan",
        confidence=0.92,
        entities=[Entity(type="network_range", value="10.0.0.0/24")],
    ),
    "scan my network for threats": Intent(type="threat_scan", confidence=0.9),
    "scan 10.0.0.5": Intent(
        type="threat_scan",
        confidence=0.88,
        entities=[Entity(type="ip_address", value="10.0.0.5")],
    ),
    "purge quarantine": Intent(type="quarantine_purge", confidence=0.93),
    "check status": Intent(
        type="status_check",
        confidence=0.45,
        ambiguous=True,
        alternatives=["system_status", "auth_status"],
    ),
    "scan something": Intent(type="threat_scan", confidence=0.4),
    "list threats": Intent(type="threat_list", confidence=0.9),
    "threat contain": Intent(type="threat_contain", confidence=0.9),
}

KNOWN_COMMANDS: dict[str, ParsedCommand] = {
    "system_status": ParsedCommand(command="system status", intent_type="system_status"),
    "network_scan": ParsedCommand(command="network scan 10.0.0.0/24", intent_type="network_scan"),
    "threat_scan": ParsedCommand(command="threat scan --comprehensive", intent_type="threat_scan"),
    "threat_list": ParsedCommand(command="threat list", intent_type="threat_list"),
    "threat_contain": ParsedCommand(command="threat contain", intent_type="threat_contain"),
    "quarantine_purge": ParsedCommand(
        command="quarantine purge --all",
        intent_type="quarantine_purge",
        destructive=True,
        description="Permanently deletes every quarantined file",
        preview="42 files",
    ),
}


class StubClassifier:
    """Looks the text up in a table; unknown text is low-confidence"""

    def __init__(self, intents: Optional[dict[str, Intent]] = None):
        self.intents = dict(KNOWN_INTENTS if intents is None else intents)
        self.calls: list[str] = []
        self.error: Optional[Exception] = None

    async def classify(self, text: str, context: ConversationContext) -> Intent:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        intent = self.intents.get(text.strip().lower())
        if intent is None:
            return Intent(type="unknown", confidence=0.1, raw_text=text)
        return intent.model_copy(update={"raw_text": text})


class StubExecutor:
    """Parses by intent type and runs commands from a script of outcomes"""

    def __init__(self):
        self.commands = dict(KNOWN_COMMANDS)
        # command -> ExecutionResult או Exception
        self.outcomes: dict[str, object] = {}
        self.executed: list[str] = []
        self.parse_error: Optional[Exception] = None
        self.delay: float = 0.0

    async def parse(self, intent: Intent, context: ConversationContext) -> ParsedCommand:
        if self.parse_error is not None:
            raise self.parse_error
        return self.commands.get(intent.type) or ParsedCommand(
            command=intent.type.replace("_", " "), intent_type=intent.type
        )

    async def execute(self, command: ParsedCommand) -> ExecutionResult:
        self.executed.append(command.command)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.get(command.command)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, ExecutionResult):
            return outcome
        return ExecutionResult(success=True, output=f"ok: {command.command}", execution_time_ms=12.5)


@pytest.fixture
def classifier() -> StubClassifier:
    return StubClassifier()


@pytest.fixture
def executor() -> StubExecutor:
    return StubExecutor()


# ============================================================================
# FakeRedis
# ============================================================================

def _redis_slice(items: list, start: int, end: int) -> list:
    """Redis inclusive-range semantics, negative indices from the tail"""
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if end < 0:
        end = n + end
    if start > end:
        return []
    return items[start:end + 1]


def _parse_bound(value) -> tuple[float, bool]:
    raw = str(value)
    if raw == "-inf":
        return float("-inf"), False
    if raw == "+inf":
        return float("inf"), False
    if raw.startswith("("):
        return float(raw[1:]), True
    return float(raw), False


class FakeRedis:
    """In-memory subset of redis.asyncio.Redis (decode_responses=True)"""

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _exists(self, key: str) -> bool:
        return key in self.strings or key in self.lists or key in self.zsets

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.strings.get(key)

    async def set(self, key: str, value) -> bool:
        self._check()
        self.strings[key] = str(value)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            for bucket in (self.strings, self.lists, self.zsets):
                if key in bucket:
                    del bucket[key]
                    deleted += 1
            self.ttls.pop(key, None)
        return deleted

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if not self._exists(key):
            return False
        self.ttls[key] = seconds
        return True

    async def rpush(self, key: str, *values: str) -> int:
        self._check()
        items = self.lists.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        return _redis_slice(self.lists.get(key, []), start, end)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        self._check()
        if key in self.lists:
            self.lists[key] = _redis_slice(self.lists[key], start, end)
        return True

    async def llen(self, key: str) -> int:
        self._check()
        return len(self.lists.get(key, []))

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        self._check()
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if zset.pop(member, None) is not None:
                removed += 1
        return removed

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self.zsets.get(key, {}))

    def _ordered(self, key: str) -> list[tuple[str, float]]:
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        return [member for member, _ in _redis_slice(self._ordered(key), start, end)]

    async def zrangebyscore(self, key: str, min_score, max_score) -> list[str]:
        self._check()
        low, low_open = _parse_bound(min_score)
        high, high_open = _parse_bound(max_score)
        result = []
        for member, score in self._ordered(key):
            if score < low or (low_open and score == low):
                continue
            if score > high or (high_open and score == high):
                continue
            result.append(member)
        return result

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ============================================================================
# Context stores
# ============================================================================

@pytest.fixture
def memory_store() -> InMemoryContextStore:
    return InMemoryContextStore(max_sessions=50, max_messages_per_session=100)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def sql_store(session_factory) -> SQLAlchemyContextStore:
    return SQLAlchemyContextStore(
        session_factory=session_factory, max_sessions=50, max_messages_per_session=100
    )


@pytest.fixture
def redis_store(fake_redis: FakeRedis) -> RedisContextStore:
    return RedisContextStore(
        redis=fake_redis, key_prefix="test", ttl_seconds=600,
        max_sessions=50, max_messages_per_session=100,
    )


@pytest.fixture(params=["memory", "sql", "redis"])
def store(request, memory_store, sql_store, redis_store):
    """Every backend, for tests of the shared store contract"""
    return {"memory": memory_store, "sql": sql_store, "redis": redis_store}[request.param]


# ============================================================================
# Engine
# ============================================================================

@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def confirmations(clock: FrozenClock) -> ConfirmationManager:
    return ConfirmationManager(default_timeout_ms=30000, clock=clock)


@pytest.fixture
def machine(memory_store, classifier, executor, confirmations, events) -> SessionStateMachine:
    return SessionStateMachine(
        store=memory_store,
        classifier=classifier,
        executor=executor,
        confirmations=confirmations,
        events=events,
        command_timeout_seconds=1.0,
    )


def drain(queue: asyncio.Queue) -> list:
    """All events currently waiting in a subscriber queue"""
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


# ============================================================================
# HTTP client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(machine: SessionStateMachine, memory_store) -> AsyncGenerator:
    """HTTP client around the app with the test engine wired into app.state"""
    from httpx import AsyncClient, ASGITransport
    from guardchat.main import app

    app.state.context_store = memory_store
    app.state.session_machine = machine
    app.state.events = machine.events

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.context_store = None
    app.state.session_machine = None
