"""
Context Store backends.
"""
from guardchat.store.base import EXPORT_FORMAT_VERSION, ContextStore
from guardchat.store.memory import InMemoryContextStore


def build_context_store(config) -> ContextStore:
    """Instantiate the backend selected by CONTEXT_STORE_BACKEND"""
    backend = config.CONTEXT_STORE_BACKEND
    limits = {
        "max_sessions": config.MAX_SESSIONS,
        "max_messages_per_session": config.MAX_MESSAGES_PER_SESSION,
    }

    if backend == "sql":
        # import עצל, SQLAlchemy engine נוצר רק כשבאמת צריך אותו
        from guardchat.store.sql import SQLAlchemyContextStore
        return SQLAlchemyContextStore(**limits)

    if backend == "redis":
        from guardchat.store.redis import RedisContextStore
        return RedisContextStore(
            url=config.REDIS_URL,
            key_prefix=config.REDIS_KEY_PREFIX,
            ttl_seconds=config.REDIS_SESSION_TTL_SECONDS,
            **limits,
        )

    return InMemoryContextStore(**limits)


__all__ = [
    "EXPORT_FORMAT_VERSION",
    "ContextStore",
    "InMemoryContextStore",
    "build_context_store",
]
