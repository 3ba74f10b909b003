"""
בדיקות ל-Middleware, guardchat/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID וקישור session id מה-path
- RequestLoggingMiddleware: לוג בקשות והעברת exceptions הלאה
- SecurityHeadersMiddleware: כותרות אבטחה, מצב DEBUG
- Exception handlers: AppException ו-Exception גנרי
"""
import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from guardchat.core.exceptions import AppException, ErrorCode, SessionNotFoundError
from guardchat.core.logging import session_id_var
from guardchat.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    app_exception_handler,
    generic_exception_handler,
    session_id_from_path,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    """endpoint מינימלי לבדיקה."""
    return PlainTextResponse("ok")


def _bound_session(request: Request) -> JSONResponse:
    """מחזיר את ה-session id שקושר ללוגים של הבקשה."""
    return JSONResponse({"session_id": session_id_var.get()})


def _error(request: Request) -> PlainTextResponse:
    """endpoint שזורק שגיאה."""
    raise ValueError("שגיאת בדיקה")


def _missing_session(request: Request) -> PlainTextResponse:
    raise SessionNotFoundError("s-404")


def _build_app(
    *,
    middlewares: list[tuple] | None = None,
    handlers: bool = False,
) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    app = Starlette(routes=[
        Route("/test", _hello),
        Route("/api/sessions/{session_id}/input", _bound_session, methods=["GET", "POST"]),
        Route("/error", _error),
        Route("/missing", _missing_session),
    ])
    if handlers:
        app.add_exception_handler(AppException, app_exception_handler)
        app.add_exception_handler(Exception, generic_exception_handler)
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# בדיקות session_id_from_path
# ============================================================================


class TestSessionIdFromPath:

    @pytest.mark.unit
    def test_extracts_session_id(self) -> None:
        assert session_id_from_path("/api/sessions/s-1/input") == "s-1"

    @pytest.mark.unit
    def test_collection_path_has_no_session(self) -> None:
        assert session_id_from_path("/api/sessions") == ""

    @pytest.mark.unit
    def test_admin_export_path(self) -> None:
        assert session_id_from_path("/api/admin/sessions/session_abc/export") == "session_abc"


# ============================================================================
# בדיקות CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:
    """בדיקות להפצת Correlation ID"""

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        """יוצר correlation ID חדש כשאין בבקשה"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert len(response.headers["x-correlation-id"]) > 0

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        """משתמש ב-correlation ID שסופק בבקשה"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "terminal-42"})
            assert response.headers["x-correlation-id"] == "terminal-42"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]
            assert first != second

    @pytest.mark.unit
    def test_binds_session_id_from_path(self) -> None:
        """כל לוג של הבקשה מסומן ב-session id"""
        app = _build_app(middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/api/sessions/s-77/input")
            assert response.json() == {"session_id": "s-77"}


# ============================================================================
# בדיקות RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request_passes_through(self) -> None:
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        """exception ב-handler עולה מחדש"""
        app = _build_app(middlewares=[(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/error").status_code == 500


# ============================================================================
# בדיקות SecurityHeadersMiddleware
# ============================================================================


class TestSecurityHeadersMiddleware:

    @pytest.mark.unit
    def test_production_headers(self) -> None:
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": False})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"
            assert response.headers["content-security-policy"] == "upgrade-insecure-requests"
            assert "max-age=31536000" in response.headers["strict-transport-security"]

    @pytest.mark.unit
    def test_debug_skips_hsts_and_csp(self) -> None:
        """בפיתוח מקומי אין HSTS, HTTP רגיל ממשיך לעבוד"""
        app = _build_app(middlewares=[(SecurityHeadersMiddleware, {"debug": True})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.headers["x-content-type-options"] == "nosniff"
            assert "strict-transport-security" not in response.headers
            assert "content-security-policy" not in response.headers


# ============================================================================
# בדיקות Exception handlers
# ============================================================================


class TestExceptionHandlers:

    @pytest.mark.unit
    def test_app_exception_as_json(self) -> None:
        app = _build_app(handlers=True, middlewares=[(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/missing")
            assert response.status_code == 404
            body = response.json()
            assert body["error"]["code"] == ErrorCode.SESSION_NOT_FOUND.value
            assert body["error"]["details"]["identifier"] == "s-404"

    @pytest.mark.unit
    def test_unexpected_exception_hidden(self) -> None:
        """פרטי ה-exception לא נחשפים ללקוח"""
        app = _build_app(handlers=True)
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/error")
            assert response.status_code == 500
            body = response.json()
            assert body["error"]["code"] == ErrorCode.INTERNAL_ERROR.value
            assert "שגיאת בדיקה" not in body["error"]["message"]
