"""Outbound message transport - the Telegram Bot API behind a small protocol."""

import logging
from typing import Protocol

from telegram import Bot
from telegram.error import Forbidden, RetryAfter, TelegramError

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """A send failed in a way that may succeed on retry."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RecipientBlocked(DeliveryError):
    """The recipient blocked the bot or can no longer be reached."""


class NotificationTransport(Protocol):
    """Protocol for anything that can deliver a message to a chat."""

    async def send_message(self, chat_id: int, text: str, parse_mode: str | None = None) -> None:
        ...

    async def send_photo(self, chat_id: int, photo: bytes, caption: str | None = None) -> None:
        ...


class TelegramTransport:
    """Sends messages through python-telegram-bot, normalizing its errors."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, chat_id: int, text: str, parse_mode: str | None = None):
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=parse_mode,
                disable_web_page_preview=True,
            )
        except Forbidden as e:
            raise RecipientBlocked(f"Chat {chat_id} blocked the bot: {e}") from e
        except RetryAfter as e:
            retry_after = e.retry_after
            if hasattr(retry_after, "total_seconds"):
                retry_after = retry_after.total_seconds()
            raise DeliveryError(f"Rate limited: {e}", retry_after=float(retry_after)) from e
        except TelegramError as e:
            raise DeliveryError(f"Telegram error for chat {chat_id}: {e}") from e

    async def send_photo(self, chat_id: int, photo: bytes, caption: str | None = None):
        try:
            await self.bot.send_photo(chat_id=chat_id, photo=photo, caption=caption)
        except Forbidden as e:
            raise RecipientBlocked(f"Chat {chat_id} blocked the bot: {e}") from e
        except TelegramError as e:
            raise DeliveryError(f"Telegram error for chat {chat_id}: {e}") from e
