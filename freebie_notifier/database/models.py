"""Freebie Notifier — Data Models.

Dataclasses shared across the pipeline: the Listing extracted from a
search result page, and the outcome records handed from the notify
step to the commit step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


# ═══════════════════════════════════════════════════════════
# Scraper Models
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Listing:
    """One classifieds entry as seen on the search result page.

    Only listing_id, title and url are required; everything else is
    extracted field-at-a-time and may be missing when the page layout
    drifts.

    Attributes:
        listing_id: Stable ad id (the data-adid attribute).
        title: Ad title.
        url: Absolute link to the ad page.
        location: Place name without the distance suffix.
        posted_at: Raw posting time text (e.g. "Heute, 14:32").
        price: Price or label text (e.g. "Zu verschenken").
        distance_km: Distance from the search centre, if shown.
        image_url: High-resolution image link, if the ad has a picture.
        description: Teaser text from the result list.
    """

    listing_id: str
    title: str
    url: str
    location: str = ""
    posted_at: str = ""
    price: str = ""
    distance_km: Optional[float] = None
    image_url: Optional[str] = None
    description: str = ""

    def to_db_dict(self) -> dict[str, Any]:
        """Columns stored for a seen listing.

        Returns:
            Dict with column names as keys.
        """
        return {
            "listing_id": self.listing_id,
            "title": self.title,
            "url": self.url,
        }


# ═══════════════════════════════════════════════════════════
# Delivery Outcomes
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class DeliveryFailure:
    """A listing that could not be delivered in this run.

    Attributes:
        listing: The listing that failed.
        reason: Short error description for the log and the database.
        permanent: True if retrying the same message cannot succeed
            (e.g. Telegram rejected the content).
    """

    listing: Listing
    reason: str
    permanent: bool = False
