"""Freebie Notifier — Scraper Package.

Turns the kleinanzeigen.de search into new listings. Components:
  - KleinanzeigenClient: Async HTTP client with retry and rate limiting
  - parse_search_page: Result page parser
  - ListingFilter: Domain filter and SeenSet deduplication
  - collect_listings: Pagination until known listings are reached
"""

from freebie_notifier.scraper.client import FetchError, KleinanzeigenClient
from freebie_notifier.scraper.list_scraper import ParsedPage, ParseError, parse_search_page
from freebie_notifier.scraper.quick_filter import FilterCriteria, ListingFilter
from freebie_notifier.scraper.pipeline import CollectResult, collect_listings

__all__ = [
    "FetchError",
    "KleinanzeigenClient",
    "ParsedPage",
    "ParseError",
    "parse_search_page",
    "FilterCriteria",
    "ListingFilter",
    "CollectResult",
    "collect_listings",
]
