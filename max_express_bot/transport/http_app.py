# max_express_bot/transport/http_app.py
"""
HTTP application: health probes, metrics, Telegram webhook, and the
lifecycle of the bot (database pool, poller, dispatcher).

Endpoints:
1. Public probes: /health (liveness), /ready (database + dispatcher)
2. Internal: /metrics (disabled with ENABLE_METRICS=false)
3. Telegram: POST /webhooks/telegram (secret token checked, webhook mode)
"""
from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from max_express_bot.config import settings, validate_or_warn, Settings
from max_express_bot.core.engine.dispatcher import Dispatcher
from max_express_bot.core.engine.domain import MarketplaceCatalog
from max_express_bot.core.engine.state_machine import ConversationMachine
from max_express_bot.core.engine.texts import get_text
from max_express_bot.infra.db_async import close_pool, init_pool
from max_express_bot.infra.health_checks_async import run_checks
from max_express_bot.infra.http_client import close_all_sessions
from max_express_bot.infra.logging_config import setup_logging, get_logger
from max_express_bot.infra.metrics import get_metrics_collector
from max_express_bot.infra.migrations_async import validate_schema_version
from max_express_bot.infra.parcel_tracker import HttpParcelTracker
from max_express_bot.infra.pg_client_repo_async import AsyncPostgresClientRepository
from max_express_bot.infra.pg_session_store_async import AsyncPostgresSessionStore
from max_express_bot.transport import telegram_sender
from max_express_bot.transport.adapters import TelegramUpdateNormalizer
from max_express_bot.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from max_express_bot.transport.reply_sink import TelegramReplySink
from max_express_bot.transport.telegram_polling import TelegramPoller
from max_express_bot.transport.telegram_webhook import telegram_webhook_handler

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)


# ============================================================================
# WIRING
# ============================================================================

def build_dispatcher(cfg: Settings) -> Dispatcher:
    """Assemble the dispatcher with its Postgres and Telegram adapters."""
    catalog = MarketplaceCatalog.from_settings(cfg, placeholder=get_text("help_placeholder"))
    missing = [k.value for k in catalog.kinds() if not cfg.help_texts.get(k.value, "").strip()]
    if missing:
        logger.warning(f"Help texts not configured, using placeholder for: {missing}")

    return Dispatcher(
        normalizer=TelegramUpdateNormalizer(),
        machine=ConversationMachine(catalog),
        sessions=AsyncPostgresSessionStore(),
        sink=TelegramReplySink(cfg.telegram_bot_token),
        clients=AsyncPostgresClientRepository(),
        tracker=HttpParcelTracker(cfg.tracking_api_url, timeout=cfg.tracking_timeout_seconds),
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting max_express_bot: env={settings.app_env}, mode={settings.telegram_mode}")

    for warning in validate_or_warn(settings):
        logger.warning(f"Config: {warning}")

    if not settings.telegram_bot_token:
        logger.critical("TELEGRAM_BOT_TOKEN (or TELOXIDE_TOKEN) is not set")
        raise RuntimeError("Telegram bot token not configured")

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}")
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m max_express_bot.infra.migrate",
            exc_info=True,
        )
        await close_pool()
        raise

    dispatcher = build_dispatcher(settings)
    fastapi_app.state.dispatcher = dispatcher

    poller: TelegramPoller | None = None
    if settings.telegram_mode == "polling":
        poller = TelegramPoller(
            dispatcher,
            token=settings.telegram_bot_token,
            poll_timeout=settings.telegram_poll_timeout,
        )
        await poller.start()
    else:
        if not settings.telegram_webhook_url:
            await close_pool()
            raise RuntimeError("TELEGRAM_MODE=webhook requires TELEGRAM_WEBHOOK_URL")
        await telegram_sender.set_webhook(
            settings.telegram_webhook_url,
            secret_token=settings.telegram_webhook_secret,
            token=settings.telegram_bot_token,
        )
        logger.info(f"Telegram webhook registered: {settings.telegram_webhook_url}")
    fastapi_app.state.poller = poller

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    # Stop fetching first, then let in-flight updates finish
    if poller is not None:
        await poller.stop()
    await dispatcher.shutdown(settings.shutdown_grace_seconds)

    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="max_express_bot",
    description="Telegram assistant of the MAX Express forwarding service",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(request: Request):
    """Readiness probe: database reachable and dispatcher accepting updates."""
    result = await run_checks(getattr(request.app.state, "dispatcher", None))

    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": result["status"]}


@app.get("/metrics")
def metrics():
    """Operational counters and timings (internal)."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


@app.post("/webhooks/telegram")
async def webhook_telegram(request: Request):
    """Inbound Telegram updates (webhook mode)"""
    return await telegram_webhook_handler(request)


def main() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        "max_express_bot.transport.http_app:app",
        host=settings.http_host,
        port=settings.http_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
