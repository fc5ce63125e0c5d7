# max_express_bot/infra/parcel_tracker.py
"""
Parcel status lookup against the forwarding warehouse API.

``GET <tracking_api_url>?no=<track code>`` answers with
``{"code": "0000", "msg": "..."}``; code ``0000`` means the parcel has
arrived at the warehouse, anything else means it is still on its way.
"""
from __future__ import annotations

import asyncio
import json

import aiohttp

from max_express_bot.core.engine.ports import ParcelStatus, ParcelTrackingClient, TrackingUnavailableError
from max_express_bot.infra.http_client import get_default_session
from max_express_bot.infra.logging_config import get_logger
from max_express_bot.infra.metrics import inc_counter

logger = get_logger(__name__)

READY_STATUS_CODE = "0000"
MAX_TRACK_CODE_LENGTH = 64


def parse_status(track_code: str, body: str) -> ParcelStatus:
    """
    Parse the API response body.

    Raises:
        TrackingUnavailableError: body is not the expected JSON object
    """
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise TrackingUnavailableError(f"Tracking API returned non-JSON body: {body[:100]!r}") from exc

    if not isinstance(data, dict) or "code" not in data:
        raise TrackingUnavailableError(f"Tracking API returned unexpected payload: {body[:100]!r}")

    code = str(data["code"])
    return ParcelStatus(
        track_code=track_code,
        ready=code == READY_STATUS_CODE,
        status_code=code,
        message=str(data.get("msg") or ""),
    )


class HttpParcelTracker(ParcelTrackingClient):
    """aiohttp client for the tracking API"""

    def __init__(self, base_url: str, timeout: float = 10):
        self.base_url = base_url
        self.timeout = timeout

    async def check(self, track_code: str) -> ParcelStatus:
        code = track_code.strip()
        if not code or len(code) > MAX_TRACK_CODE_LENGTH:
            raise TrackingUnavailableError(f"Invalid track code: {track_code[:20]!r}")

        session = get_default_session()
        try:
            async with session.get(
                self.base_url,
                params={"no": code},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                body = await resp.text()
                if resp.status != 200:
                    inc_counter("tracking_requests_total", status="http_error")
                    raise TrackingUnavailableError(f"Tracking API HTTP {resp.status}")
        except aiohttp.ClientError as exc:
            logger.warning(f"Tracking API connection error: {exc}")
            inc_counter("tracking_requests_total", status="connection_error")
            raise TrackingUnavailableError(str(exc)) from exc
        except asyncio.TimeoutError as exc:
            inc_counter("tracking_requests_total", status="timeout")
            raise TrackingUnavailableError("Tracking API timeout") from exc

        status = parse_status(code, body)
        inc_counter("tracking_requests_total", status="ready" if status.ready else "pending")
        logger.info(f"Parcel status: code={code}, status={status.status_code}")
        return status
