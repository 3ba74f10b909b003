"""
Celery Tasks - retention sweep over the persistent context store.

The in-memory backend lives inside the API process, so only the SQL and
Redis backends can be swept from a worker.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from guardchat.workers.celery_app import celery_app
from guardchat.core.config import settings
from guardchat.core.logging import get_logger, set_correlation_id
from guardchat.store.base import ContextStore

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # סגירת Redis singleton לפני סגירת ה-loop, כדי שהריצה הבאה לא תשתמש
            # ב-client שמחובר ל-loop סגור
            from guardchat.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@asynccontextmanager
async def task_context_store(backend: Optional[str] = None) -> AsyncIterator[Optional[ContextStore]]:
    """Persistent store bound to the task's event loop; None for the memory backend"""
    backend = backend or settings.CONTEXT_STORE_BACKEND
    limits = {
        "max_sessions": settings.MAX_SESSIONS,
        "max_messages_per_session": settings.MAX_MESSAGES_PER_SESSION,
    }

    if backend == "sql":
        from guardchat.db.database import get_task_session_factory
        from guardchat.store.sql import SQLAlchemyContextStore

        async with get_task_session_factory() as session_factory:
            yield SQLAlchemyContextStore(session_factory=session_factory, **limits)
        return

    if backend == "redis":
        from guardchat.store.redis import RedisContextStore

        store = RedisContextStore(
            url=settings.REDIS_URL,
            key_prefix=settings.REDIS_KEY_PREFIX,
            ttl_seconds=settings.REDIS_SESSION_TTL_SECONDS,
            **limits,
        )
        try:
            yield store
        finally:
            await store.close()
        return

    yield None


async def _cleanup_stale_sessions(hours: int, store_factory=task_context_store) -> dict:
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    async with store_factory() as store:
        if store is None:
            logger.info(
                "Skipping session cleanup, store is in-process",
                extra_data={"backend": settings.CONTEXT_STORE_BACKEND},
            )
            return {"deleted": 0, "skipped": True}

        deleted = await store.cleanup(cutoff)
        logger.info(
            "Cleaned up stale sessions",
            extra_data={"deleted": deleted, "retention_hours": hours, "backend": store.backend_name},
        )
        return {"deleted": deleted, "skipped": False}


@celery_app.task(name="guardchat.workers.tasks.cleanup_stale_sessions")
def cleanup_stale_sessions(hours: Optional[int] = None):
    """Delete sessions inactive for longer than the retention window"""
    return run_async(_cleanup_stale_sessions(hours or settings.SESSION_RETENTION_HOURS))
