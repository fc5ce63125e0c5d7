# max_express_bot/transport/telegram_sender.py
"""
Telegram Bot API outbound calls.

Uses the Bot API to:
- Send text messages (optionally with an inline keyboard)
- Acknowledge inline keyboard presses (answerCallbackQuery)
- Long-poll for updates and manage the webhook

Error classification (TelegramSendError.retryable):
- Token invalid / bot blocked  → NOT retryable (needs human intervention)
- Chat not found               → NOT retryable
- Rate limiting (429)          → retryable  (backoff then retry)
- Network / timeout            → retryable  (transient)
- Unknown server error         → retryable  (optimistic)

Messages are sent as plain text: marketplace help texts come from the
environment and may contain characters that HTML parse mode rejects.
"""
from __future__ import annotations

import asyncio
from typing import Iterable

import aiohttp

from max_express_bot.config import settings
from max_express_bot.core.engine.domain import Choice
from max_express_bot.core.engine.ports import ReplyDeliveryError
from max_express_bot.infra.http_client import get_telegram_session
from max_express_bot.infra.logging_config import get_logger, mask_user_id
from max_express_bot.infra.metrics import inc_counter

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bot_url(method: str, token: str | None = None) -> str:
    """Build Telegram Bot API URL."""
    bot_token = token or settings.telegram_bot_token
    return f"{TELEGRAM_API_BASE}/bot{bot_token}/{method}"


def build_reply_markup(choices: Iterable[Choice]) -> dict | None:
    """
    Inline keyboard with one button per row, or None for no keyboard.

    >>> build_reply_markup([Choice("Poizon", "mp:poizon")])
    {'inline_keyboard': [[{'text': 'Poizon', 'callback_data': 'mp:poizon'}]]}
    """
    rows = [[{"text": c.label, "callback_data": c.payload}] for c in choices]
    if not rows:
        return None
    return {"inline_keyboard": rows}


def split_text(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split ``text`` into Telegram-sized chunks, preferring line breaks."""
    if len(text) <= limit:
        return [text]

    chunks = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(rest[:cut])
        rest = rest[cut:].lstrip("\n")
    if rest:
        chunks.append(rest)
    return chunks


# ---------------------------------------------------------------------------
# Error type
# ---------------------------------------------------------------------------

class TelegramSendError(ReplyDeliveryError):
    """Error calling the Telegram Bot API.

    Attributes:
        status:      HTTP status code (0 for connection-level errors).
        error_code:  Telegram-specific error code from the response body.
        retryable:   Whether the caller should retry later.
        retry_after: Seconds Telegram asked us to wait (429 only).
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
        retry_after: int | None = None,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def send_message(
    chat_id: int,
    text: str,
    choices: Iterable[Choice] = (),
    token: str | None = None,
) -> dict:
    """
    Send a text message via Telegram Bot API.

    Texts longer than Telegram's limit are split; the keyboard is attached
    to the last chunk.

    Returns:
        Telegram API response dict of the last chunk

    Raises:
        TelegramSendError: On API errors (check .retryable)
    """
    url = _bot_url("sendMessage", token)
    markup = build_reply_markup(choices)
    chunks = split_text(text)

    response: dict = {}
    for i, chunk in enumerate(chunks):
        payload: dict = {"chat_id": chat_id, "text": chunk}
        if markup is not None and i == len(chunks) - 1:
            payload["reply_markup"] = markup
        response = await _send_request(url, payload, chat_id)
    return response


async def answer_callback_query(
    callback_query_id: str,
    text: str | None = None,
    token: str | None = None,
) -> dict:
    """
    Acknowledge an inline keyboard press (stops the client-side spinner).
    """
    url = _bot_url("answerCallbackQuery", token)
    payload: dict = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text
    return await _send_request(url, payload, None)


async def delete_webhook(token: str | None = None) -> dict:
    """Remove webhook so polling can work."""
    url = _bot_url("deleteWebhook", token)
    return await _send_request(url, {}, None)


async def set_webhook(
    webhook_url: str,
    secret_token: str | None = None,
    token: str | None = None,
) -> dict:
    """
    Set webhook URL for the bot.

    Args:
        webhook_url: Public HTTPS URL for receiving updates
        secret_token: Secret token for X-Telegram-Bot-Api-Secret-Token header validation
        token: Bot token override
    """
    url = _bot_url("setWebhook", token)
    payload: dict = {
        "url": webhook_url,
        "allowed_updates": ["message", "callback_query"],
    }
    if secret_token:
        payload["secret_token"] = secret_token

    return await _send_request(url, payload, None)


async def get_updates(
    offset: int | None = None,
    timeout: int = 30,
    token: str | None = None,
) -> list[dict]:
    """
    Long-poll for updates via getUpdates.

    Args:
        offset: Identifier of the first update to be returned
        timeout: Long-polling timeout in seconds
        token: Bot token override

    Returns:
        List of Update dicts
    """
    url = _bot_url("getUpdates", token)
    payload: dict = {
        "timeout": timeout,
        "allowed_updates": ["message", "callback_query"],
    }
    if offset is not None:
        payload["offset"] = offset

    session = get_telegram_session()
    try:
        async with session.post(
            url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=timeout + 10, connect=5),
        ) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200 and body and body.get("ok"):
                return body.get("result", [])

            error_desc = (body or {}).get("description", "Unknown error")
            error_code = (body or {}).get("error_code")

            raise TelegramSendError(
                resp.status, error_code, error_desc,
                retryable=resp.status == 429 or resp.status >= 500,
                retry_after=_retry_after(body),
            )

    except TelegramSendError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.warning(f"Telegram getUpdates connection error: {exc!r}")
        raise TelegramSendError(0, None, repr(exc), retryable=True) from exc


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

def _retry_after(body: dict | None) -> int | None:
    value = ((body or {}).get("parameters") or {}).get("retry_after")
    return value if isinstance(value, int) else None


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except ValueError:
        logger.warning(f"Telegram API returned non-JSON body: status={resp.status}")
        return None


async def _send_request(url: str, payload: dict, chat_id: int | None) -> dict:
    """
    Execute a Telegram Bot API request with error classification.
    """
    target = mask_user_id(chat_id) if chat_id is not None else "system"
    try:
        session = get_telegram_session()
        async with session.post(url, json=payload) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200 and body and body.get("ok"):
                result = body.get("result", {})
                msg_id = result.get("message_id", "ok") if isinstance(result, dict) else "ok"
                logger.info(f"Telegram API call ok: to={target}, msg_id={msg_id}")
                inc_counter("telegram_outbound_sent")
                return body

            # --- Error path ------------------------------------------------
            error_desc = (body or {}).get("description", "Unknown error")
            error_code = (body or {}).get("error_code")

            # -- Auth failure: token invalid (DO NOT retry) --------
            if resp.status == 401 or error_code == 401:
                logger.error(f"Telegram API auth error (token invalid): {error_desc}")
                inc_counter("telegram_outbound_auth_error")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            # -- Forbidden: bot blocked by user (DO NOT retry) --
            if resp.status == 403:
                logger.warning(f"Telegram API forbidden: to={target}, {error_desc}")
                inc_counter("telegram_outbound_forbidden")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            # -- Bad request: chat not found, stale callback query, etc. (DO NOT retry) --
            if resp.status == 400:
                logger.warning(f"Telegram API bad request: to={target}, {error_desc}")
                inc_counter("telegram_outbound_bad_request")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            # -- Rate limit: retry with backoff --------------
            if resp.status == 429:
                retry_after = _retry_after(body) or 30
                logger.warning(f"Telegram API rate limit, retry_after={retry_after}s")
                inc_counter("telegram_outbound_rate_limited")
                raise TelegramSendError(
                    resp.status, error_code, error_desc,
                    retryable=True, retry_after=retry_after,
                )

            # -- Anything else: optimistic retry ----------------------------
            logger.error(f"Telegram API error: status={resp.status}, code={error_code}, msg={error_desc}")
            inc_counter("telegram_outbound_error")
            raise TelegramSendError(resp.status, error_code, error_desc, retryable=True)

    except TelegramSendError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error(f"Telegram API connection error: {exc!r}")
        inc_counter("telegram_outbound_connection_error")
        raise TelegramSendError(0, None, repr(exc), retryable=True) from exc
