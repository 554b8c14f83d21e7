"""Outbound notifications to the conversation a submission came from.

Conversation keys carry their channel as a prefix: "tg:<chat id>" (optionally
followed by ":album:<group id>") for Telegram, "web:<user>" for the web API.
Web callers read outcomes from the HTTP response, so nothing is pushed to them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import TelegramError

logger = logging.getLogger(__name__)

TELEGRAM_PREFIX = "tg"
WEB_PREFIX = "web"


@dataclass(frozen=True)
class PromptOption:
    """One interactive choice attached to a notification."""

    label: str
    data: str


class Notifier(Protocol):
    async def notify(
        self, conversation_key: str, text: str, options: list[PromptOption] | None = None
    ) -> str | None:
        """Send a message; return a reference that edit() accepts, if any."""
        ...

    async def edit(self, conversation_key: str, message_ref: str, text: str) -> None: ...


def telegram_key(chat_id: int) -> str:
    return f"{TELEGRAM_PREFIX}:{chat_id}"


def telegram_chat_id(conversation_key: str) -> int | None:
    """Chat id encoded in a Telegram conversation key, or None for other channels."""
    parts = conversation_key.split(":")
    if len(parts) < 2 or parts[0] != TELEGRAM_PREFIX:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


class NullNotifier:
    """Notifier for channels that read results synchronously."""

    async def notify(
        self, conversation_key: str, text: str, options: list[PromptOption] | None = None
    ) -> str | None:
        logger.debug("Not notifying %s: %s", conversation_key, text[:80])
        return None

    async def edit(self, conversation_key: str, message_ref: str, text: str) -> None:
        return None


class TelegramNotifier:
    """Sends to the chat encoded in the conversation key; other keys are ignored."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def notify(
        self, conversation_key: str, text: str, options: list[PromptOption] | None = None
    ) -> str | None:
        chat_id = telegram_chat_id(conversation_key)
        if chat_id is None:
            return None

        markup = None
        if options:
            markup = InlineKeyboardMarkup(
                [[InlineKeyboardButton(option.label, callback_data=option.data)] for option in options]
            )
        message = await self._bot.send_message(chat_id=chat_id, text=text, reply_markup=markup)
        return str(message.message_id)

    async def edit(self, conversation_key: str, message_ref: str, text: str) -> None:
        chat_id = telegram_chat_id(conversation_key)
        if chat_id is None:
            return
        try:
            await self._bot.edit_message_text(chat_id=chat_id, message_id=int(message_ref), text=text)
        except TelegramError:
            # Message too old or deleted by the user; the outcome still stands
            logger.warning("Could not edit message %s in %s", message_ref, conversation_key)
