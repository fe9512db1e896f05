"""Freebie Notifier — Search Result Page Parser.

Extracts listings from a kleinanzeigen.de search result page. Each ad
is an <article class="aditem" data-adid="..."> inside the result list.

Extraction is field-at-a-time with selector fallbacks: when the page
layout drifts, optional fields come back empty instead of failing the
whole page. Only the id, title and link are required per ad.
"""

from __future__ import annotations

import re
from typing import Iterator, Optional

from selectolax.parser import HTMLParser, Node

from freebie_notifier.database.models import Listing
from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)

# Containers that mark a search result page (possibly with zero hits)
_RESULT_CONTAINERS = ("#srchrslt-adtable", "#srchrslt-content", ".ad-list")
_AD_SELECTOR = "article.aditem"
_AD_LINK_PREFIX = "/s-anzeige/"
_IMAGE_RULE = "?rule=$_59.AUTO"

_ID_PATTERN = re.compile(r"^\d+$")
_DISTANCE_PATTERN = re.compile(r"\(\s*(\d+(?:[.,]\d+)?)\s*km\s*\)", re.IGNORECASE)


class ParseError(Exception):
    """Raised (or attached to a ParsedPage) when a page is not a result page."""


def _text(node: Optional[Node]) -> str:
    """Stripped, whitespace-collapsed text of a node ("" for None)."""
    if node is None:
        return ""
    return " ".join(node.text(separator=" ").split())


def _attr(node: Optional[Node], name: str) -> str:
    """Attribute value of a node ("" for None or a missing attribute)."""
    if node is None:
        return ""
    val = node.attributes.get(name)
    return val.strip() if val else ""


def _first(node: Node, *selectors: str) -> Optional[Node]:
    """First match of the first selector that matches anything."""
    for selector in selectors:
        found = node.css_first(selector)
        if found is not None:
            return found
    return None


def _split_location(text: str) -> tuple[str, Optional[float]]:
    """Split "04105 Leipzig (3 km)" into ("04105 Leipzig", 3.0)."""
    match = _DISTANCE_PATTERN.search(text)
    if match is None:
        return text, None
    distance = float(match.group(1).replace(",", "."))
    location = (text[:match.start()] + text[match.end():]).strip()
    return location, distance


def _high_res_image(img: Optional[Node]) -> Optional[str]:
    """Best image link: last srcset candidate, else src, with the large rule.

    Lazily loaded images carry the real link in data-src / data-imgsrc.
    """
    if img is None:
        return None

    src = ""
    srcset = _attr(img, "srcset")
    if srcset:
        candidates = [c.strip() for c in srcset.split(",") if c.strip()]
        if candidates:
            src = candidates[-1].split()[0]
    if not src:
        src = _attr(img, "src") or _attr(img, "data-src") or _attr(img, "data-imgsrc")
    if not src or src.startswith("data:"):
        return None

    return src.split("?", 1)[0] + _IMAGE_RULE


class ParsedPage:
    """Listings of one result page.

    Lazy and restartable: every iteration walks the parsed tree again
    and yields listings in document order. A page whose shape was not
    recognized iterates empty and carries a ParseError in `error`.

    Attributes:
        base_url: Site root used to absolutize ad links.
        error: ParseError for an unrecognized page, else None.
        skipped: Records skipped during the most recent iteration.
    """

    def __init__(
        self,
        tree: Optional[HTMLParser],
        base_url: str,
        error: Optional[ParseError] = None,
    ) -> None:
        self._tree = tree
        self.base_url = base_url.rstrip("/")
        self.error = error
        self.skipped = 0

    @property
    def ok(self) -> bool:
        """Whether the page was recognized as a result page."""
        return self.error is None

    def __iter__(self) -> Iterator[Listing]:
        self.skipped = 0
        if self._tree is None:
            return
        for index, article in enumerate(self._tree.css(_AD_SELECTOR)):
            listing = self._parse_article(article, index)
            if listing is None:
                self.skipped += 1
                continue
            yield listing

    def _parse_article(self, article: Node, index: int) -> Optional[Listing]:
        """Parse one ad article. Returns None if a required field is bad."""
        listing_id = _attr(article, "data-adid")
        if not _ID_PATTERN.match(listing_id):
            logger.warning("Skipping ad #%d: malformed id %r", index, listing_id)
            return None

        # ── Title + URL (required) ───────────────────────
        link = _first(article, "a.ellipsis", "h2 a", f"a[href^='{_AD_LINK_PREFIX}']")
        href = _attr(link, "href") or _attr(article, "data-href")
        if not href.startswith(_AD_LINK_PREFIX):
            # Absolute links to the same site are fine too
            if not href.startswith(self.base_url + _AD_LINK_PREFIX):
                logger.debug("Skipping ad %s: no ad link (%r)", listing_id, href)
                return None
        title = _text(link)
        if not title:
            logger.warning("Skipping ad %s: empty title", listing_id)
            return None
        url = href if href.startswith("http") else self.base_url + href

        # ── Optional fields ──────────────────────────────
        location_text = _text(_first(
            article, ".aditem-main--top--left", ".aditem-details",
        ))
        location, distance_km = _split_location(location_text)

        posted_at = _text(_first(
            article, ".aditem-main--top--right", ".aditem-addon",
        ))

        price = _text(_first(
            article,
            ".aditem-main--middle--price-shipping--price",
            ".aditem-main--middle--price",
            ".aditem-details strong",
        ))

        description = _text(_first(
            article, ".aditem-main--middle--description", ".aditem-main p",
        ))

        image_url = _high_res_image(_first(article, ".aditem-image img", "img"))

        return Listing(
            listing_id=listing_id,
            title=title,
            url=url,
            location=location,
            posted_at=posted_at,
            price=price,
            distance_km=distance_km,
            image_url=image_url,
            description=description,
        )


def parse_search_page(html: str, base_url: str) -> ParsedPage:
    """Parse a search result page.

    Args:
        html: Raw page HTML.
        base_url: Site root, e.g. "https://www.kleinanzeigen.de".

    Returns:
        A ParsedPage. If neither a result container nor any ad article
        is present (captcha, error page, layout overhaul) the page is
        empty and `error` holds a ParseError.
    """
    if not html or not html.strip():
        return ParsedPage(None, base_url, ParseError("Empty document"))

    tree = HTMLParser(html)
    has_container = any(tree.css_first(sel) is not None for sel in _RESULT_CONTAINERS)
    has_ads = tree.css_first(_AD_SELECTOR) is not None

    if not has_container and not has_ads:
        title = _text(tree.css_first("title"))
        logger.error("Unrecognized search page (title: %r)", title[:80])
        return ParsedPage(
            None, base_url,
            ParseError(f"No search result list found (page title: {title[:80]!r})"),
        )

    return ParsedPage(tree, base_url)
