# -*- coding: utf-8 -*-
"""
Notification channels.

A channel delivers one rendered message to one destination and reports
failures as TransientDeliveryError (retry) or PermanentDeliveryError (stop).
"""
from typing import Optional, Protocol

from loguru import logger
from telegram import Bot
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, RetryAfter, TelegramError, TimedOut

from pricewatch.errors import PermanentDeliveryError, TransientDeliveryError


class NotificationChannel(Protocol):
    name: str

    async def send(self, message: str, destination: str) -> None: ...


class TelegramChannel:
    """Sends plain-text messages through the Telegram Bot API."""

    name = "telegram"

    def __init__(self, token: str, timeout: float = 10.0, bot: Optional[Bot] = None):
        if not token and bot is None:
            raise ValueError("TelegramChannel requires a bot token")
        self.bot = bot or Bot(token)
        self.timeout = timeout

    async def send(self, message: str, destination: str) -> None:
        """
        Send message to a chat.

        Raises:
            TransientDeliveryError: network error, timeout or rate limit
            PermanentDeliveryError: bad request, bot blocked/kicked, invalid token
        """
        try:
            await self.bot.send_message(
                chat_id=destination,
                text=message,
                read_timeout=self.timeout,
                write_timeout=self.timeout,
            )
        except RetryAfter as e:
            raise TransientDeliveryError(f"rate limited by Telegram (retry after {e.retry_after})") from e
        except TimedOut as e:
            raise TransientDeliveryError(f"timed out sending to {destination}") from e
        # BadRequest derives from NetworkError, so it must be checked first
        except (BadRequest, Forbidden, InvalidToken) as e:
            raise PermanentDeliveryError(f"rejected by Telegram for {destination}: {e}") from e
        except NetworkError as e:
            raise TransientDeliveryError(f"network error sending to {destination}: {e}") from e
        except TelegramError as e:
            raise PermanentDeliveryError(f"Telegram error for {destination}: {e}") from e

    async def ping(self) -> str:
        """Verify the token; returns the bot username."""
        me = await self.bot.get_me()
        return me.username


class DryRunChannel:
    """Logs messages instead of sending them (no bot token configured)."""

    name = "dry-run"

    def __init__(self):
        self.sent = []

    async def send(self, message: str, destination: str) -> None:
        self.sent.append((destination, message))
        logger.info(f"[dry-run] MSG -> {destination}\n{message}")

    async def ping(self) -> str:
        return "dry-run"
