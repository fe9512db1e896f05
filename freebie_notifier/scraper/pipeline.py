"""Freebie Notifier — Search Pagination.

Walks the search result pages newest-first and collects listings:
  - stops after an empty page (end of results)
  - stops after the first page that contains an already-seen id, since
    everything further down is older
  - never goes beyond max_pages

Any fetch failure or unrecognized page aborts the walk; the caller
treats that as a failed run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, Callable, Optional

from freebie_notifier.database.models import Listing
from freebie_notifier.scraper.client import KleinanzeigenClient
from freebie_notifier.scraper.list_scraper import parse_search_page
from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CollectResult:
    """Listings gathered over all scanned pages.

    Attributes:
        listings: Unique listings in document order.
        pages_fetched: Number of pages requested.
        skipped_records: Ads skipped because of malformed markup.
    """

    listings: list[Listing] = field(default_factory=list)
    pages_fetched: int = 0
    skipped_records: int = 0


async def collect_listings(
    client: KleinanzeigenClient,
    seen_ids: AbstractSet[str],
    max_pages: int,
    heartbeat: Optional[Callable[[], None]] = None,
) -> CollectResult:
    """Fetch and parse result pages until known territory is reached.

    Args:
        client: Open KleinanzeigenClient.
        seen_ids: The current SeenSet (read only).
        max_pages: Upper bound on pages to fetch.
        heartbeat: Called before each page request (run lock refresh).

    Returns:
        A CollectResult; listings are deduplicated by id across pages.

    Raises:
        FetchError: If a page cannot be retrieved.
        ParseError: If a page is not a recognizable result page.
        LockLostError: If the heartbeat finds the run lock taken over.
    """
    result = CollectResult()
    ids_in_run: set[str] = set()

    for page in range(1, max(1, max_pages) + 1):
        if heartbeat is not None:
            heartbeat()
        html = await client.fetch_page(page)
        result.pages_fetched += 1

        parsed = parse_search_page(html, client.config.base_url)
        if parsed.error is not None:
            raise parsed.error

        page_listings = list(parsed)
        result.skipped_records += parsed.skipped
        if not page_listings:
            logger.info("No listings on page %d, stopping", page)
            break

        reached_seen = False
        added = 0
        for listing in page_listings:
            if listing.listing_id in seen_ids:
                reached_seen = True
            if listing.listing_id in ids_in_run:
                continue
            ids_in_run.add(listing.listing_id)
            result.listings.append(listing)
            added += 1

        logger.info(
            "Page %d: %d parsed, %d added (total: %d, skipped: %d)",
            page, len(page_listings), added, len(result.listings), parsed.skipped,
        )

        if reached_seen:
            logger.info("Page %d contains already seen listings, stopping", page)
            break

    return result
