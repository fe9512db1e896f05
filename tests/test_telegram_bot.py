# tests/test_telegram_bot.py
import asyncio

import pytest
from telegram.constants import ParseMode
from telegram.error import (
    BadRequest,
    ChatMigrated,
    Forbidden,
    InvalidToken,
    NetworkError,
    RetryAfter,
    TimedOut,
)

from conftest import FakeBot, listing

from freebie_notifier.notifier.telegram_bot import DeliveryError, TelegramNotifier


def _deliver(notifier: TelegramNotifier, item) -> str:
    async def run():
        async with notifier:
            return await notifier.deliver(item)

    return asyncio.run(run())


@pytest.fixture
def photo_listing():
    return listing("1001", "Sofa", image_url="https://img.example/sofa?rule=$_59.AUTO")


def test_photo_message_with_html_caption(config, bot, photo_listing):
    notifier = TelegramNotifier(config.telegram, bot=bot)
    message_id = _deliver(notifier, photo_listing)

    assert message_id == "101"
    assert bot.initialized and bot.closed
    sent = bot.sent[0]
    assert sent["kind"] == "photo"
    assert sent["chat_id"] == "-100123"
    assert sent["photo"] == photo_listing.image_url
    assert sent["parse_mode"] == ParseMode.HTML
    assert "Sofa" in sent["caption"]
    assert notifier.sent_count == 1


def test_listing_without_image_sends_text(config, bot):
    _deliver(TelegramNotifier(config.telegram, bot=bot), listing("1", "Tisch"))
    assert bot.sent[0]["kind"] == "text"


def test_photos_can_be_disabled(make_config, bot, photo_listing):
    cfg = make_config(telegram={"send_photos": False})
    _deliver(TelegramNotifier(cfg.telegram, bot=bot), photo_listing)
    assert bot.sent[0]["kind"] == "text"


def test_rejected_photo_falls_back_to_text(config, bot, photo_listing):
    bot.fail("Sofa", BadRequest("Wrong file identifier/http url specified"))
    _deliver(TelegramNotifier(config.telegram, bot=bot), photo_listing)

    assert [s["kind"] for s in bot.sent] == ["text"]


def test_html_parse_error_falls_back_to_plain_text(config, bot):
    bot.fail("Tisch", BadRequest("Can't parse entities: unsupported start tag"))
    _deliver(TelegramNotifier(config.telegram, bot=bot), listing("1", "Tisch"))

    sent = bot.sent[0]
    assert sent["parse_mode"] is None
    assert "<b>" not in sent["text"]
    assert "Anzeige ansehen (https://" in sent["text"]


def test_retry_after_waits_and_retries(config, bot):
    bot.fail("Tisch", RetryAfter(1))
    _deliver(TelegramNotifier(config.telegram, bot=bot), listing("1", "Tisch"))
    assert len(bot.sent) == 1


def test_network_errors_are_retried(config, bot):
    bot.fail("Tisch", TimedOut(), NetworkError("connection reset"))
    _deliver(TelegramNotifier(config.telegram, bot=bot), listing("1", "Tisch"))
    assert len(bot.sent) == 1


def test_exhausted_retries_raise_transient_error(config, bot):
    bot.fail("Tisch", *(NetworkError("down") for _ in range(config.telegram.max_retries)))

    with pytest.raises(DeliveryError) as exc_info:
        _deliver(TelegramNotifier(config.telegram, bot=bot), listing("1", "Tisch"))

    assert exc_info.value.listing_id == "1"
    assert exc_info.value.permanent is False
    assert bot.sent == []


def test_rejected_content_is_permanent(config, bot):
    bot.fail("Tisch", BadRequest("Message is too long"))

    with pytest.raises(DeliveryError) as exc_info:
        _deliver(TelegramNotifier(config.telegram, bot=bot), listing("1", "Tisch"))

    assert exc_info.value.permanent is True


@pytest.mark.parametrize(
    "error",
    [
        Forbidden("Forbidden: bot was kicked from the group chat"),
        InvalidToken(),
        ChatMigrated(-100987),
        BadRequest("Chat not found"),
        BadRequest("Bad Request: not enough rights to send text messages to the chat"),
    ],
)
def test_bot_or_chat_problems_are_not_permanent(config, bot, error):
    bot.fail("Tisch", error)

    with pytest.raises(DeliveryError) as exc_info:
        _deliver(TelegramNotifier(config.telegram, bot=bot), listing("1", "Tisch"))

    assert exc_info.value.permanent is False


def test_chat_not_found_on_photo_is_not_permanent(config, bot, photo_listing):
    bot.fail("Sofa", BadRequest("Chat not found"), BadRequest("Chat not found"))

    with pytest.raises(DeliveryError) as exc_info:
        _deliver(TelegramNotifier(config.telegram, bot=bot), photo_listing)

    assert exc_info.value.permanent is False


def test_open_circuit_fails_fast(make_config):
    cfg = make_config(telegram={"circuit_failure_threshold": 1, "max_retries": 1})
    bot = FakeBot()
    bot.fail("Artikel", NetworkError("down"))
    notifier = TelegramNotifier(cfg.telegram, bot=bot)

    async def run():
        errors = []
        async with notifier:
            for item in (listing("1"), listing("2")):
                try:
                    await notifier.deliver(item)
                except DeliveryError as e:
                    errors.append(e)
        return errors

    errors = asyncio.run(run())

    assert len(errors) == 2
    assert notifier.circuit_breaker.is_open
    assert "OPEN" in errors[1].reason
    assert errors[1].permanent is False


def test_strip_formatting():
    html = '<b>Titel:</b> A &amp; B\n<a href="https://x.de/a">Anzeige ansehen</a>'
    assert TelegramNotifier._strip_formatting(html) == "Titel: A & B\nAnzeige ansehen (https://x.de/a)"


def test_rejected_listings_do_not_open_the_circuit(make_config):
    cfg = make_config(telegram={"circuit_failure_threshold": 2})
    bot = FakeBot()
    bot.fail("Artikel", *(BadRequest("Message is too long") for _ in range(3)))
    notifier = TelegramNotifier(cfg.telegram, bot=bot)

    async def run():
        async with notifier:
            for item in (listing("1"), listing("2"), listing("3")):
                with pytest.raises(DeliveryError):
                    await notifier.deliver(item)
            return await notifier.deliver(listing("4"))

    asyncio.run(run())

    assert not notifier.circuit_breaker.is_open
    assert len(bot.sent) == 1
