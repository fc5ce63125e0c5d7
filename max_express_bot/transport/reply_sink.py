# max_express_bot/transport/reply_sink.py
"""
ReplySink implementation on top of the Telegram Bot API.
"""
from __future__ import annotations

from max_express_bot.core.engine.domain import Reply
from max_express_bot.core.engine.ports import ReplySink, ReplyTarget
from max_express_bot.infra.logging_config import get_logger
from max_express_bot.transport import telegram_sender
from max_express_bot.transport.telegram_sender import TelegramSendError

logger = get_logger(__name__)


class TelegramReplySink(ReplySink):
    """
    Delivers a ``Reply`` as Telegram messages.

    Order: acknowledge the callback query (if the event was a button press),
    send ``text`` with the inline keyboard, then each note as its own
    message. A failed acknowledgement is only logged; a failed send raises
    ``TelegramSendError`` and the remaining notes are not sent.
    """

    def __init__(self, token: str | None = None):
        self.token = token

    async def deliver(self, target: ReplyTarget, reply: Reply) -> None:
        if target.callback_query_id:
            try:
                await telegram_sender.answer_callback_query(target.callback_query_id, token=self.token)
            except TelegramSendError as exc:
                # Stale callbacks (older than ~15 min) can no longer be answered
                logger.warning(f"Callback acknowledgement failed: {exc}")

        await telegram_sender.send_message(
            target.chat_id,
            reply.text,
            reply.choices,
            token=self.token,
        )
        for note in reply.notes:
            await telegram_sender.send_message(target.chat_id, note, token=self.token)
