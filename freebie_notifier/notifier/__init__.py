"""Freebie Notifier — Notifier Package.

Telegram delivery of new listings. Components:
  - formatters: HTML message builder
  - telegram_bot: Async Telegram client with retry, fallback and rate limiting
"""

from freebie_notifier.notifier.formatters import format_listing_alert
from freebie_notifier.notifier.telegram_bot import DeliveryError, TelegramNotifier

__all__ = [
    "format_listing_alert",
    "DeliveryError",
    "TelegramNotifier",
]
