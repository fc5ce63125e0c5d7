# max_express_bot/transport/adapters.py
"""
Adapters converting Telegram Bot API updates into domain events.
These are pure converters - they don't contain conversation logic.
"""
from __future__ import annotations

from max_express_bot.core.engine.domain import (
    CallbackAction,
    Command,
    DropReason,
    Event,
    InboundUpdate,
    Text,
)
from max_express_bot.infra.logging_config import get_logger, mask_user_id

logger = get_logger(__name__)

# Update fields we recognize but never act on
_IGNORED_UPDATE_KINDS = (
    "edited_message",
    "channel_post",
    "edited_channel_post",
    "inline_query",
    "chosen_inline_result",
    "my_chat_member",
    "chat_member",
)


def parse_command(text: str) -> Command | None:
    """
    Parse ``/name arg1 arg2``; None if ``text`` is not a command.

    The ``@BotName`` suffix Telegram appends in groups is stripped and the
    name is lowercased: "/Start@MaxExpressBot" -> Command("start").
    """
    if not text.startswith("/"):
        return None
    parts = text.split()
    name = parts[0][1:].split("@", 1)[0].lower()
    if not name:
        return None
    return Command(name=name, args=tuple(parts[1:]))


class TelegramUpdateNormalizer:
    """
    Normalizes a Telegram Update dict into an ``InboundUpdate``.

    Telegram sends JSON Updates such as:
    {
      "update_id": 123456,
      "message": {
        "message_id": 42,
        "from": {"id": 123, "first_name": "User", ...},
        "chat": {"id": 123, "type": "private", ...},
        "text": "/start"
      }
    }
    or, for inline keyboard presses:
    {
      "update_id": 123457,
      "callback_query": {
        "id": "4382bfdwdsb323b2d9",
        "from": {"id": 123, ...},
        "message": {"message_id": 43, "chat": {"id": 123, ...}, ...},
        "data": "mp:poizon"
      }
    }

    Anything else (media, edits, channel posts, empty text) is dropped
    with ``DropReason.UNSUPPORTED``; updates without a sender are
    ``DropReason.MALFORMED``.
    """

    def normalize(self, update: dict) -> InboundUpdate | DropReason:
        if not isinstance(update, dict):
            logger.warning(f"Telegram update is not an object: {type(update).__name__}")
            return DropReason.MALFORMED

        update_id = update.get("update_id")
        if not isinstance(update_id, int):
            logger.warning("Telegram update without update_id, ignoring")
            return DropReason.MALFORMED

        if "message" in update:
            return self._from_message(update_id, update["message"])

        if "callback_query" in update:
            return self._from_callback(update_id, update["callback_query"])

        kinds = [k for k in update if k != "update_id"]
        if any(k in _IGNORED_UPDATE_KINDS for k in kinds):
            logger.debug(f"Telegram update ignored: kinds={kinds}")
        else:
            logger.debug(f"Telegram update of unknown kind ignored: kinds={kinds}")
        return DropReason.UNSUPPORTED

    def _from_message(self, update_id: int, message: dict) -> InboundUpdate | DropReason:
        sender = message.get("from") or {}
        user_id = sender.get("id")
        chat_id = (message.get("chat") or {}).get("id")
        if not isinstance(user_id, int) or not isinstance(chat_id, int):
            logger.warning(f"Telegram message without sender/chat id, ignoring (update_id={update_id})")
            return DropReason.MALFORMED

        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            # photos, stickers, voice, documents, service messages, ...
            kinds = [k for k in message if k not in ("message_id", "from", "chat", "date")]
            logger.debug(f"Telegram message without text ignored: kinds={kinds}")
            return DropReason.UNSUPPORTED

        event: Event = parse_command(text.strip()) or Text(body=text.strip())

        logger.info(
            f"Telegram message: from={mask_user_id(user_id)}, update_id={update_id}, "
            f"event={event.kind}"
        )

        return InboundUpdate(
            update_id=update_id,
            user_id=user_id,
            chat_id=chat_id,
            event=event,
        )

    def _from_callback(self, update_id: int, callback: dict) -> InboundUpdate | DropReason:
        sender = callback.get("from") or {}
        user_id = sender.get("id")
        if not isinstance(user_id, int):
            logger.warning(f"Telegram callback without sender id, ignoring (update_id={update_id})")
            return DropReason.MALFORMED

        data = callback.get("data")
        if not isinstance(data, str) or not data:
            # game callbacks and buttons without callback_data
            logger.debug(f"Telegram callback without data ignored (update_id={update_id})")
            return DropReason.UNSUPPORTED

        chat_id = ((callback.get("message") or {}).get("chat") or {}).get("id")
        if not isinstance(chat_id, int):
            # Message too old to be delivered with the callback; private chat id == user id
            chat_id = user_id

        logger.info(
            f"Telegram callback: from={mask_user_id(user_id)}, update_id={update_id}"
        )

        return InboundUpdate(
            update_id=update_id,
            user_id=user_id,
            chat_id=chat_id,
            event=CallbackAction(payload=data),
            callback_query_id=callback.get("id"),
        )
