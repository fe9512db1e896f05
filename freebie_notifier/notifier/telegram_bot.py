"""Freebie Notifier — Telegram Bot Client.

Async Telegram client using python-telegram-bot v22+. Delivers one
message per listing with retry, rate limiting and fallbacks:
  - photo rejected by Telegram → text message
  - HTML parse error → plain text
  - 429 (RetryAfter) → wait the advised time
  - timeouts / network errors → exponential backoff
  - bot kicked, bad token, chat missing → failure that is retried next
    run and never counts as a rejected message
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from typing import Any, Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import (
    BadRequest,
    ChatMigrated,
    Forbidden,
    InvalidToken,
    NetworkError,
    RetryAfter,
    TelegramError,
    TimedOut,
)

from freebie_notifier.config import TelegramConfig
from freebie_notifier.database.models import Listing
from freebie_notifier.notifier.formatters import (
    MAX_CAPTION_LEN,
    format_listing_alert,
)
from freebie_notifier.utils.logger import get_logger
from freebie_notifier.utils.rate_limiter import AsyncRateLimiter
from freebie_notifier.utils.resilience import CircuitBreaker, CircuitOpenError

logger = get_logger(__name__)

# BadRequest texts that concern the chat, not the message content
_CHAT_ERRORS = (
    "chat not found",
    "chat_id is empty",
    "group chat was upgraded",
    "not enough rights",
    "have no rights",
)


class DeliveryError(Exception):
    """Raised when a listing could not be delivered.

    Attributes:
        listing_id: The listing that failed.
        permanent: True if Telegram rejected the message content itself,
            so a retry of the same message cannot succeed. Errors about
            the bot or the chat (kicked, bad token, missing chat) are
            never permanent; they go away once the setup is fixed.
    """

    def __init__(self, listing_id: str, reason: str, permanent: bool = False) -> None:
        self.listing_id = listing_id
        self.reason = reason
        self.permanent = permanent
        super().__init__(f"Delivery of {listing_id} failed: {reason}")


def _is_chat_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _CHAT_ERRORS)


def _seconds(value: Any) -> float:
    """RetryAfter.retry_after is an int or a timedelta depending on the PTB version."""
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class TelegramNotifier:
    """Sends listing notifications to one Telegram chat.

    Attributes:
        config: TelegramConfig with bot_token and chat_id.
        circuit_breaker: Stops calling Telegram after repeated failures.
        sent_count: Messages delivered by this instance.
    """

    def __init__(self, config: TelegramConfig, bot: Optional[Any] = None) -> None:
        """Initialize the notifier.

        Args:
            config: TelegramConfig from the app configuration.
            bot: Optional Bot-compatible object (tests pass a stub).
        """
        self.config = config
        self._bot = bot if bot is not None else Bot(token=config.bot_token)
        self._rate_limiter = AsyncRateLimiter(
            max_calls=config.messages_per_minute,
            period_seconds=60.0,
        )
        self.circuit_breaker = CircuitBreaker(
            name="telegram",
            failure_threshold=config.circuit_failure_threshold,
            cooldown_seconds=300,
            # A rejected listing means Telegram is up
            is_outage=lambda e: not (isinstance(e, DeliveryError) and e.permanent),
        )
        self.sent_count = 0

    async def initialize(self) -> bool:
        """Initialize the bot (validates the token via getMe).

        Returns:
            True if connected successfully, False otherwise. A failure is
            not fatal here; each delivery then fails on its own and the
            listings stay eligible for the next run.
        """
        try:
            await self._bot.initialize()
            logger.debug("Telegram bot initialized")
            return True
        except TelegramError as e:
            logger.error("Telegram bot initialization failed: %s", e)
            return False

    async def shutdown(self) -> None:
        try:
            await self._bot.shutdown()
        except TelegramError as e:
            logger.warning("Telegram bot shutdown failed: %s", e)

    async def deliver(self, listing: Listing) -> str:
        """Deliver one listing notification.

        Args:
            listing: The listing to announce.

        Returns:
            The Telegram message id.

        Raises:
            DeliveryError: If the message could not be delivered.
        """
        try:
            message_id = await self.circuit_breaker.call(self._deliver, listing)
        except CircuitOpenError as e:
            raise DeliveryError(listing.listing_id, str(e), permanent=False) from e

        self.sent_count += 1
        return message_id

    async def _deliver(self, listing: Listing) -> str:
        """Send with retries. Fallbacks do not consume an attempt."""
        max_retries = max(1, self.config.max_retries)
        use_photo = self.config.send_photos and bool(listing.image_url)
        plain_text = False
        attempt = 0
        last_reason = "no attempt made"

        while attempt < max_retries:
            attempt += 1
            await self._rate_limiter.acquire()

            try:
                if use_photo:
                    msg = await self._bot.send_photo(
                        chat_id=self.config.chat_id,
                        photo=listing.image_url,
                        caption=format_listing_alert(listing, MAX_CAPTION_LEN),
                        parse_mode=ParseMode.HTML,
                    )
                else:
                    msg = await self._send_text(listing, plain_text)
                logger.info("Delivered listing %s: %s", listing.listing_id, listing.title[:60])
                return str(msg.message_id)

            except BadRequest as e:
                error_msg = str(e)
                if use_photo:
                    logger.warning(
                        "Photo for %s rejected (%s), falling back to text",
                        listing.listing_id, error_msg[:200],
                    )
                    use_photo = False
                    attempt -= 1
                    continue
                if not plain_text and "parse" in error_msg.lower():
                    logger.warning(
                        "Parse error for %s, retrying as plain text: %s",
                        listing.listing_id, error_msg[:200],
                    )
                    plain_text = True
                    attempt -= 1
                    continue
                if _is_chat_error(error_msg):
                    logger.error(
                        "Telegram chat %s not usable, check chat_id and bot rights: %s",
                        self.config.chat_id, error_msg,
                    )
                    raise DeliveryError(listing.listing_id, error_msg, permanent=False) from e
                logger.error("Telegram rejected listing %s: %s", listing.listing_id, error_msg)
                raise DeliveryError(listing.listing_id, error_msg, permanent=True) from e

            except RetryAfter as e:
                wait = min(_seconds(e.retry_after), self.config.max_retry_after_seconds)
                last_reason = f"rate limited (retry after {_seconds(e.retry_after):.0f}s)"
                logger.warning(
                    "Telegram rate limited (attempt %d/%d). Waiting %.0f seconds...",
                    attempt, max_retries, wait,
                )
                if attempt < max_retries:
                    await asyncio.sleep(wait)

            except TimedOut as e:
                last_reason = f"timeout: {e}"
                logger.warning("Telegram timeout (attempt %d/%d)", attempt, max_retries)
                if attempt < max_retries:
                    await asyncio.sleep(self._backoff(attempt))

            except NetworkError as e:
                last_reason = f"network error: {e}"
                logger.warning(
                    "Telegram network error (attempt %d/%d): %s", attempt, max_retries, e,
                )
                if attempt < max_retries:
                    await asyncio.sleep(self._backoff(attempt))

            except (Forbidden, InvalidToken, ChatMigrated) as e:
                logger.error(
                    "Telegram refused the bot for chat %s, check bot_token and membership: %s",
                    self.config.chat_id, e,
                )
                raise DeliveryError(listing.listing_id, str(e), permanent=False) from e

            except TelegramError as e:
                logger.error("Telegram error for listing %s: %s", listing.listing_id, e)
                raise DeliveryError(listing.listing_id, str(e), permanent=True) from e

        logger.error(
            "Failed to deliver listing %s after %d attempts: %s",
            listing.listing_id, max_retries, last_reason,
        )
        raise DeliveryError(listing.listing_id, last_reason, permanent=False)

    async def _send_text(self, listing: Listing, plain: bool) -> Any:
        text = format_listing_alert(listing)
        if plain:
            return await self._bot.send_message(
                chat_id=self.config.chat_id,
                text=self._strip_formatting(text),
            )
        return await self._bot.send_message(
            chat_id=self.config.chat_id,
            text=text,
            parse_mode=ParseMode.HTML,
        )

    def _backoff(self, attempt: int) -> float:
        return self.config.backoff_base_seconds * (2 ** (attempt - 1))

    @staticmethod
    def _strip_formatting(text: str) -> str:
        """Remove HTML formatting for the plain text fallback.

        Args:
            text: HTML formatted text.

        Returns:
            Plain text version, links rendered as "text (url)".
        """
        text = re.sub(r'<a href="([^"]+)">([^<]+)</a>', r"\2 (\1)", text)
        text = re.sub(r"<[^>]+>", "", text)
        text = text.replace("&quot;", '"').replace("&lt;", "<").replace("&gt;", ">")
        return text.replace("&amp;", "&")

    async def __aenter__(self) -> "TelegramNotifier":
        await self.initialize()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.shutdown()
