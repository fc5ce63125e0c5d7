# max_express_bot/transport/telegram_polling.py
"""
Telegram Bot API long-polling handler.

Alternative to webhook mode. Calls getUpdates in a loop with long-polling.
Simpler ops (no public URL or SSL required).

Usage:
    poller = TelegramPoller(dispatcher)
    await poller.start()
    # ... on shutdown:
    await poller.stop()
"""
from __future__ import annotations

import asyncio

from max_express_bot.core.engine.dispatcher import Dispatcher
from max_express_bot.infra.logging_config import get_logger
from max_express_bot.infra.metrics import inc_counter
from max_express_bot.transport import telegram_sender
from max_express_bot.transport.telegram_sender import TelegramSendError

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 30


class TelegramPoller:
    """
    Long-polling loop for receiving Telegram updates.

    Every fetched update is acknowledged (offset advanced) and handed to the
    dispatcher as a background task, so a slow user never blocks the loop.
    Updates are submitted in update_id order, which keeps per-user ordering.

    Error handling:
    - On API errors: exponential backoff (1s → 2s → 4s → ... → 30s max),
      or Telegram's retry_after when rate limited
    - On cancellation: graceful shutdown
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        token: str | None = None,
        poll_timeout: int = 30,
    ):
        self.dispatcher = dispatcher
        self.token = token
        self.poll_timeout = poll_timeout
        self._task: asyncio.Task | None = None
        self._offset: int | None = None
        self._running = False
        self._backoff = 1  # seconds, doubles on error

    @property
    def running(self) -> bool:
        return self._running

    @property
    def offset(self) -> int | None:
        return self._offset

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            logger.warning("Telegram poller already running")
            return

        # Remove any existing webhook so polling can work
        try:
            await telegram_sender.delete_webhook(token=self.token)
            logger.info("Telegram webhook removed (switching to polling mode)")
        except TelegramSendError as e:
            logger.warning(f"Could not delete Telegram webhook: {e}")

        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="tg_poller")
        logger.info(f"Telegram poller started (timeout={self.poll_timeout}s)")

    async def stop(self) -> None:
        """Stop fetching updates. Already submitted updates keep running."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Telegram poller stopped")

    async def poll_once(self) -> int:
        """
        Fetch one batch and submit it to the dispatcher.

        Returns the number of updates fetched.
        """
        updates = await telegram_sender.get_updates(
            offset=self._offset,
            timeout=self.poll_timeout,
            token=self.token,
        )

        for update in updates:
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                # Acknowledge this update on the next getUpdates call
                self._offset = max(self._offset or 0, update_id + 1)

            if self.dispatcher.submit(update) is None:
                inc_counter("telegram_poll_rejected")

        return len(updates)

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            try:
                await self.poll_once()
                # Reset backoff on successful poll
                self._backoff = 1

            except TelegramSendError as e:
                if not self._running:
                    break
                delay = e.retry_after or self._backoff
                logger.error(f"Telegram polling error: {e}, backing off {delay}s")
                inc_counter("telegram_poll_errors")
                await asyncio.sleep(delay)
                self._backoff = min(self._backoff * 2, MAX_BACKOFF_SECONDS)

            except asyncio.CancelledError:
                break

            except Exception as e:
                if not self._running:
                    break
                logger.error(f"Telegram polling unexpected error: {e}", exc_info=True)
                inc_counter("telegram_poll_errors")
                await asyncio.sleep(self._backoff)
                self._backoff = min(self._backoff * 2, MAX_BACKOFF_SECONDS)
