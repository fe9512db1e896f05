"""Freebie Notifier — Telegram Message Formatters.

Builds the German HTML notification for a listing. HTML parse mode
only needs &, < and > escaped, which keeps scraped titles safe.

Layout: one data point per line, header first, link last, short
enough to read on a phone without wrapping.
"""

from __future__ import annotations

from freebie_notifier.database.models import Listing

# Telegram limits
MAX_CAPTION_LEN = 1024
MAX_MESSAGE_LEN = 4096

_HEADER = "🎁 Neuer kostenloser Artikel gefunden!"
_MAX_TITLE_LEN = 200
_MAX_DESCRIPTION_LEN = 300


def _e(text: str) -> str:
    """Escape HTML special characters for Telegram HTML parse mode.

    Args:
        text: Raw text to escape.

    Returns:
        HTML-safe text.
    """
    if not text:
        return ""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _link(text: str, url: str) -> str:
    """Build an HTML link with escaped text and URL."""
    safe_url = url.replace("&", "&amp;").replace('"', "&quot;")
    return f'<a href="{safe_url}">{_e(text)}</a>'


def _bold(text: str) -> str:
    return f"<b>{_e(text)}</b>"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def format_listing_alert(listing: Listing, max_len: int = MAX_MESSAGE_LEN) -> str:
    """Format the notification for one new listing.

    The optional parts (location, time, description) are dropped from
    the end until the message fits max_len; header, title and link are
    always kept.

    Args:
        listing: The listing to announce.
        max_len: Length limit, MAX_CAPTION_LEN for photo captions.

    Returns:
        HTML formatted message string.
    """
    head = [
        _bold(_HEADER),
        "",
        f"<b>Titel:</b> {_e(_truncate(listing.title, _MAX_TITLE_LEN))}",
    ]

    optional: list[str] = []
    if listing.location:
        where = listing.location
        if listing.distance_km is not None:
            where = f"{where} ({listing.distance_km:g} km)"
        optional.append(f"📍 {_e(where)}")
    if listing.posted_at:
        optional.append(f"🕐 {_e(listing.posted_at)}")
    if listing.description:
        optional.append(f"<i>{_e(_truncate(listing.description, _MAX_DESCRIPTION_LEN))}</i>")

    tail = ["", _link("Anzeige ansehen", listing.url)]

    while True:
        text = "\n".join(head + optional + tail)
        if len(text) <= max_len or not optional:
            return text
        optional.pop()
