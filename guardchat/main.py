"""
GuardChat Session Engine - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from guardchat.core.config import settings
from guardchat.core.events import EventBus
from guardchat.core.logging import setup_logging, get_logger
from guardchat.core.middleware import setup_middleware, setup_exception_handlers
from guardchat.api.dependencies.engine import build_session_machine
from guardchat.api.routes import router as api_router
from guardchat.store import build_context_store

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Sessions", "description": "Conversational sessions: input, confirmations, history, suggestions."},
    {"name": "Workflows", "description": "Guided multi-step security procedures."},
    {"name": "Admin", "description": "Statistics, retention cleanup, confirmation sweep, export/import."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Conversational command session engine for the security CLI.",
    openapi_tags=_OPENAPI_TAGS,
)

setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# ברירת מחדל בטוחה לפיתוח מקומי בלבד
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Wire the context store and the session engine"""
    logger.info(
        "Starting application",
        extra_data={"app_name": settings.APP_NAME, "store_backend": settings.CONTEXT_STORE_BACKEND}
    )

    if settings.CONTEXT_STORE_BACKEND == "sql":
        from guardchat.db.database import engine, Base
        import guardchat.db.models  # noqa: F401  רישום הטבלאות ב-metadata

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    store = build_context_store(settings)
    events = EventBus()
    app.state.context_store = store
    app.state.events = events
    app.state.session_machine = build_session_machine(store, events)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    store = getattr(app.state, "context_store", None)
    if store is not None:
        await store.close()

    if settings.CONTEXT_STORE_BACKEND == "sql":
        from guardchat.db.database import engine
        # סגירת חיבורי מסד הנתונים
        await engine.dispose()
        logger.info("Database connections disposed")


@app.get("/health", tags=["Health"], summary="Liveness probe")
async def health_check() -> dict[str, str]:
    """The process is up. External dependencies are not checked here."""
    return {"status": "healthy"}


@app.get("/health/ready", tags=["Health"], summary="Readiness probe")
async def readiness_check() -> JSONResponse:
    """Store reachable and collaborators configured"""
    store = getattr(app.state, "context_store", None)
    machine = getattr(app.state, "session_machine", None)

    result = {
        "status": "healthy",
        "store": "not initialized",
        "engine": "ok" if machine is not None else "collaborators not configured",
    }
    if store is not None:
        stats = await store.get_statistics()
        result["store"] = "ok" if stats.get("available", True) else "unavailable"

    if result["store"] != "ok" or machine is None:
        result["status"] = "degraded"
    return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)
