# max_express_bot/transport/telegram_webhook.py
"""
Telegram Bot API webhook handler.

Handles:
- POST /webhooks/telegram — inbound Updates from Telegram

Security features:
- X-Telegram-Bot-Api-Secret-Token header validation (if configured)
- Fast 200 response to avoid Telegram retries: the update is handed to the
  dispatcher as a background task
"""
from __future__ import annotations

import hmac

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse

from max_express_bot.config import settings
from max_express_bot.core.engine.dispatcher import Dispatcher
from max_express_bot.infra.logging_config import get_logger
from max_express_bot.infra.metrics import inc_counter

logger = get_logger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def verify_secret_token(header_token: str | None, expected: str | None) -> bool:
    """
    True if the header matches ``expected`` or verification is disabled
    (no secret configured).
    """
    if not expected:
        return True
    if not header_token:
        logger.warning(f"Telegram webhook: missing {SECRET_HEADER} header")
        return False
    return hmac.compare_digest(header_token, expected)


async def telegram_webhook_handler(request: Request) -> JSONResponse:
    """
    Handle Telegram Bot API webhook Updates (POST).

    Always answers 200 for authenticated requests, even on malformed input,
    so Telegram does not redeliver.
    """
    if not verify_secret_token(request.headers.get(SECRET_HEADER), settings.telegram_webhook_secret):
        logger.error("Telegram webhook: secret token verification failed")
        inc_counter("telegram_webhook_rejected", reason="secret")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Telegram webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    if not isinstance(payload, dict):
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    dispatcher: Dispatcher | None = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None or dispatcher.submit(payload) is None:
        # Not started or shutting down: let Telegram redeliver later
        inc_counter("telegram_webhook_rejected", reason="unavailable")
        raise HTTPException(status_code=503, detail="Shutting down")

    inc_counter("telegram_webhook_accepted")
    return JSONResponse({"ok": True}, status_code=200)
