# max_express_bot/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from max_express_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

WEBHOOK_PATH = "/webhooks/telegram"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log incoming requests; probes are logged at DEBUG"""

    QUIET_PATHS = ("/health", "/ready", "/metrics")

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start_time) * 1000

        level = "debug" if request.url.path in self.QUIET_PATHS else "info"
        getattr(logger, level)(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration_ms:.2f}ms",
            extra={"request_id": request_id},
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch and format unhandled exceptions"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")

            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )

            # Telegram redelivers on non-2xx; a broken update would loop forever
            if request.url.path == WEBHOOK_PATH:
                return JSONResponse(content={"ok": False}, status_code=200)

            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "request_id": request_id,
                },
            )
