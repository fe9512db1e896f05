# tests/conftest.py
import os
import tempfile

# Logging is configured on first import; keep test logs out of the repo.
os.environ.setdefault("FREEBIE_LOG_DIR", tempfile.mkdtemp(prefix="freebie-logs-"))

import asyncio
import types
from pathlib import Path

import httpx
import pytest

from freebie_notifier.config import build_config
from freebie_notifier.database.models import Listing
from freebie_notifier.notifier.telegram_bot import TelegramNotifier
from freebie_notifier.scraper.client import KleinanzeigenClient

BASE_URL = "https://www.kleinanzeigen.de"


# ---------------------------------------------------------------------
# HTML builders
# ---------------------------------------------------------------------
def make_article(
    ad_id: str,
    title: str,
    price: str = "Zu verschenken",
    location: str = "04105 Leipzig (2 km)",
    posted: str = "Heute, 14:32",
    image: str | None = "https://img.kleinanzeigen.de/api/v1/prod-ads/images/ab/abc?rule=$_2.AUTO",
    href: str | None = None,
) -> str:
    href = href if href is not None else f"/s-anzeige/{title.lower().replace(' ', '-')}/{ad_id}-272-4257"
    img = ""
    if image:
        img = (
            f'<div class="aditem-image"><a href="{href}"><div class="imagebox srpimagebox">'
            f'<img src="{image}" srcset="{image} 1x, {image.split("?")[0]}?rule=$_35.AUTO 2x" alt="{title}">'
            f"</div></a></div>"
        )
    return f"""
    <li class="ad-listitem">
      <article class="aditem" data-adid="{ad_id}" data-href="{href}">
        {img}
        <div class="aditem-main">
          <div class="aditem-main--top">
            <div class="aditem-main--top--left"><i class="icon icon-small icon-pin"></i> {location}</div>
            <div class="aditem-main--top--right"><i class="icon icon-small icon-calendar-open"></i> {posted}</div>
          </div>
          <div class="aditem-main--middle">
            <h2 class="text-module-begin"><a class="ellipsis" href="{href}">{title}</a></h2>
            <p class="aditem-main--middle--description">Abholung in Leipzig.</p>
            <div class="aditem-main--middle--price-shipping">
              <p class="aditem-main--middle--price-shipping--price">{price}</p>
            </div>
          </div>
        </div>
      </article>
    </li>
    """


def make_page(*articles: str) -> str:
    return f"""<!DOCTYPE html>
    <html><head><title>Zu verschenken in Leipzig | kleinanzeigen.de</title></head>
    <body>
      <div id="srchrslt-content">
        <ul id="srchrslt-adtable" class="itemlist ad-list it3">
          {''.join(articles)}
        </ul>
      </div>
    </body></html>"""


CAPTCHA_PAGE = "<html><head><title>Sicherheitsabfrage</title></head><body><form id='captcha'></form></body></html>"


# ---------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------
def settings_dict(tmp_path: Path, **overrides) -> dict:
    settings = {
        "search": {
            "base_url": BASE_URL,
            "category_slug": "s-zu-verschenken-tauschen",
            "category_id": 272,
            "postal_code": "04105",
            "location_id": 4257,
            "radius_km": 10,
            "max_pages": 3,
            "page_delay_seconds": 0,
            "max_retries": 3,
            "backoff_base_seconds": 0,
            "timeout_seconds": 5,
        },
        "filter": {"free_markers": ["verschenken"], "first_run_limit": 25},
        "telegram": {
            "bot_token": "123:test",
            "chat_id": "-100123",
            "messages_per_minute": 1000,
            "max_retries": 3,
            "backoff_base_seconds": 0,
            "max_retry_after_seconds": 0,
        },
        "state": {
            "database_path": str(tmp_path / "seen.db"),
            "lock_path": str(tmp_path / "run.lock"),
            "lock_stale_after_seconds": 900,
            "max_seen": 1000,
        },
    }
    for section, values in overrides.items():
        settings[section] = {**settings.get(section, {}), **values}
    return settings


@pytest.fixture
def config(tmp_path):
    return build_config(settings_dict(tmp_path), base_dir=tmp_path)


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        return build_config(settings_dict(tmp_path, **overrides), base_dir=tmp_path)

    return _make


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------
class FakeSite:
    """Serves search pages through httpx.MockTransport."""

    def __init__(self, pages: dict[int, str] | None = None, status: int = 200):
        self.pages = pages or {}
        self.status = status
        self.requests: list[str] = []

    def set_pages(self, *pages: str) -> None:
        self.pages = {i: p for i, p in enumerate(pages, 1)}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.status != 200:
            return httpx.Response(self.status, text="error")
        path = request.url.path
        page = 1
        if "/seite:" in path:
            page = int(path.split("/seite:")[1].split("/")[0])
        return httpx.Response(200, text=self.pages.get(page, make_page()))

    def client_factory(self, cfg):
        return KleinanzeigenClient(cfg.search, transport=httpx.MockTransport(self.handler))


class FakeBot:
    """Records Telegram calls; raises configured errors for matching titles."""

    def __init__(self):
        self.sent: list[dict] = []
        self.errors: dict[str, list[BaseException]] = {}
        self.initialized = False
        self.closed = False
        self._next_id = 100
        # Seconds each send takes, and a hook run after every successful send
        self.delay = 0.0
        self.on_send = None

    def fail(self, title_fragment: str, *errors: BaseException) -> None:
        self.errors[title_fragment] = list(errors)

    async def initialize(self):
        self.initialized = True

    async def shutdown(self):
        self.closed = True

    def _maybe_raise(self, text: str) -> None:
        for fragment, errors in self.errors.items():
            if fragment in text and errors:
                raise errors.pop(0)

    async def _ok(self, kind: str, **kwargs):
        if self.delay:
            await asyncio.sleep(self.delay)
        self._next_id += 1
        self.sent.append({"kind": kind, **kwargs})
        if self.on_send is not None:
            self.on_send()
        return types.SimpleNamespace(message_id=self._next_id)

    async def send_message(self, chat_id, text, parse_mode=None, **kwargs):
        self._maybe_raise(text)
        return await self._ok("text", chat_id=chat_id, text=text, parse_mode=parse_mode)

    async def send_photo(self, chat_id, photo, caption=None, parse_mode=None, **kwargs):
        self._maybe_raise(caption or "")
        return await self._ok("photo", chat_id=chat_id, photo=photo, caption=caption, parse_mode=parse_mode)


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def bot():
    return FakeBot()


@pytest.fixture
def notifier_factory(bot):
    def _factory(cfg):
        return TelegramNotifier(cfg.telegram, bot=bot)

    return _factory


def listing(listing_id: str, title: str = "", price: str = "Zu verschenken",
            distance_km: float | None = 2.0, **kwargs) -> Listing:
    return Listing(
        listing_id=listing_id,
        title=title or f"Artikel {listing_id}",
        url=f"{BASE_URL}/s-anzeige/x/{listing_id}-272-4257",
        price=price,
        distance_km=distance_km,
        **kwargs,
    )
