# max_express_bot/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Named, lazily created aiohttp.ClientSession singletons, so every request
reuses pooled TCP connections.

Session profiles
~~~~~~~~~~~~~~~~
- **telegram** – Bot API calls (total=25 s, connect=5 s, pool limit=20).
  Long-poll requests override the total timeout per call.
- **default**  – other outbound HTTP, e.g. parcel tracking (total=30 s, connect=5 s)

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from max_express_bot.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_telegram_session() -> aiohttp.ClientSession:
    """Session for Telegram Bot API calls."""
    return _get_or_create(
        "telegram",
        aiohttp.ClientTimeout(total=25, connect=5),
        limit=20,
    )


def get_default_session() -> aiohttp.ClientSession:
    """General-purpose session (parcel tracking, etc.)."""
    return _get_or_create(
        "default",
        aiohttp.ClientTimeout(total=30, connect=5),
        limit=10,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
