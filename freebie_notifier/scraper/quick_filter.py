"""Freebie Notifier — Listing Filter and Deduplicator.

Local, zero-request filter applied between parsing and notification:
  - domain filter: the ad is free to take and within the search radius
  - deduplication: the ad id is not in the SeenSet

The filter is pure: same input and SeenSet, same output, same order.
It never touches the SeenSet; the orchestrator commits after delivery.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, Iterable, Optional

from freebie_notifier.config import AppConfig
from freebie_notifier.database.models import Listing
from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class FilterCriteria:
    """Domain filter parameters.

    Attributes:
        radius_km: Maximum distance from the search centre.
        free_markers: Lower-case substrings of the price label that mark
            a free ad (e.g. "verschenken").
        require_price_marker: Reject ads without a price label.
    """

    radius_km: float
    free_markers: tuple[str, ...] = ("verschenken",)
    require_price_marker: bool = False

    @classmethod
    def from_config(cls, config: AppConfig) -> "FilterCriteria":
        return cls(
            radius_km=float(config.search.radius_km),
            free_markers=tuple(m.lower() for m in config.filter.free_markers),
            require_price_marker=config.filter.require_price_marker,
        )


@dataclass
class FilterStats:
    """Why listings were dropped in the last select_new() call."""

    total: int = 0
    duplicates: int = 0
    not_free: int = 0
    out_of_radius: int = 0
    already_seen: int = 0
    selected: int = 0
    rejected_ids: list[str] = field(default_factory=list)


class ListingFilter:
    """Applies the domain filter and the SeenSet difference.

    Attributes:
        criteria: The FilterCriteria in effect.
        last_stats: Counters from the most recent select_new() call.
    """

    def __init__(self, criteria: FilterCriteria) -> None:
        self.criteria = criteria
        self.last_stats = FilterStats()

    def is_free(self, listing: Listing) -> bool:
        """True if the price label marks the ad as free.

        Without a price label the ad passes (the search category already
        restricts to free items) unless require_price_marker is set.
        """
        price = listing.price.lower()
        if not price:
            return not self.criteria.require_price_marker
        return any(marker in price for marker in self.criteria.free_markers)

    def in_radius(self, listing: Listing) -> bool:
        """True if the ad is within the radius, or shows no distance."""
        if listing.distance_km is None:
            return True
        return listing.distance_km <= self.criteria.radius_km

    def passes(self, listing: Listing) -> bool:
        """Domain filter only (no SeenSet check)."""
        return self.is_free(listing) and self.in_radius(listing)

    def select_new(
        self,
        listings: Iterable[Listing],
        seen_ids: AbstractSet[str],
        limit: Optional[int] = None,
    ) -> list[Listing]:
        """Listings that pass the domain filter and are not yet seen.

        Args:
            listings: Parsed listings in document order.
            seen_ids: The current SeenSet (not modified).
            limit: Optional cap on the number of listings returned.

        Returns:
            The selected listings in their original order. A repeated id
            keeps its first occurrence only.
        """
        stats = FilterStats()
        emitted: set[str] = set()
        selected: list[Listing] = []

        for listing in listings:
            stats.total += 1
            if listing.listing_id in emitted:
                stats.duplicates += 1
                continue
            if listing.listing_id in seen_ids:
                stats.already_seen += 1
                continue
            if not self.is_free(listing):
                stats.not_free += 1
                stats.rejected_ids.append(listing.listing_id)
                logger.debug("Not free: %s (%r)", listing.listing_id, listing.price)
                continue
            if not self.in_radius(listing):
                stats.out_of_radius += 1
                stats.rejected_ids.append(listing.listing_id)
                logger.debug(
                    "Out of radius: %s (%.1f km)",
                    listing.listing_id, listing.distance_km,
                )
                continue

            emitted.add(listing.listing_id)
            if limit is not None and len(selected) >= limit:
                continue
            selected.append(listing)

        stats.selected = len(selected)
        self.last_stats = stats
        logger.info(
            "Filter: %d listings → %d new (%d seen, %d not free, %d out of radius)",
            stats.total, stats.selected, stats.already_seen,
            stats.not_free, stats.out_of_radius,
        )
        return selected
