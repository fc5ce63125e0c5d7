# tests/test_middleware.py
"""Tests for max_express_bot/transport/middleware.py — request ID, error handling."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from max_express_bot.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)


def _build_app(raise_for: set[str] | None = None):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Order matters: ErrorHandling wraps RequestID
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.post("/webhooks/telegram")
    def telegram_endpoint():
        if "/webhooks/telegram" in raise_for:
            raise RuntimeError("telegram boom")
        return {"ok": True}

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test")
        assert resp.status_code == 200
        assert len(resp.headers["X-Request-ID"]) >= 32

    def test_preserves_existing_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test", headers={"X-Request-ID": "my-custom-request-id-123"})
        assert resp.headers["X-Request-ID"] == "my-custom-request-id-123"


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_telegram_error_returns_200(self):
        client = TestClient(_build_app(raise_for={"/webhooks/telegram"}), raise_server_exceptions=False)
        resp = client.post("/webhooks/telegram")
        assert resp.status_code == 200
        assert resp.json() == {"ok": False}

    def test_generic_error_returns_500(self):
        client = TestClient(_build_app(raise_for={"/test"}), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 500
        data = resp.json()
        assert "error" in data
        assert "request_id" in data
