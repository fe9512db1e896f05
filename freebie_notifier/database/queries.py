"""Freebie Notifier — Listing Store Operations.

Async read/write operations on the SeenSet. Every function:
  - Uses parameterized queries (? placeholders, never f-strings for values)
  - Wraps driver errors in StateIOError
  - Logs operations at DEBUG level

commit_run() is the single write path of a run and executes as one
transaction: either every delivered id lands in the SeenSet together
with the bookkeeping, or nothing changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import aiosqlite

from freebie_notifier.database.db import Database, StateIOError
from freebie_notifier.database.models import DeliveryFailure, Listing
from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)

OUTCOME_DELIVERED = "delivered"
OUTCOME_SUPPRESSED = "suppressed"


@dataclass
class CommitResult:
    """What a commit changed.

    Attributes:
        added: Number of ids newly added as delivered.
        suppressed: Ids added with outcome 'suppressed'.
        pruned: Number of old rows removed to bound the SeenSet.
    """

    added: int = 0
    suppressed: list[str] = field(default_factory=list)
    pruned: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_dict(row: Any) -> dict[str, Any]:
    return dict(row)


# ═══════════════════════════════════════════════════════════
# Reads
# ═══════════════════════════════════════════════════════════


async def load_seen_ids(db: Database) -> set[str]:
    """Load the complete SeenSet.

    Args:
        db: Active database instance.

    Returns:
        Set of listing ids that must not be notified again.

    Raises:
        StateIOError: If the table cannot be read.
    """
    try:
        conn = await db.get_connection()
        cursor = await conn.execute("SELECT listing_id FROM seen_listings")
        rows = await cursor.fetchall()
    except aiosqlite.Error as e:
        raise StateIOError(f"Cannot load seen listings: {e}") from e

    seen = {row["listing_id"] for row in rows}
    logger.debug("Loaded %d seen listing ids", len(seen))
    return seen


async def get_seen(db: Database, listing_id: str) -> Optional[dict[str, Any]]:
    """Retrieve one SeenSet row.

    Args:
        db: Active database instance.
        listing_id: The listing id.

    Returns:
        Row as a dictionary, or None if the id was never committed.
    """
    try:
        conn = await db.get_connection()
        cursor = await conn.execute(
            "SELECT * FROM seen_listings WHERE listing_id = ?",
            (listing_id,),
        )
        row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise StateIOError(f"Cannot read seen listing {listing_id}: {e}") from e
    return _row_to_dict(row) if row is not None else None


async def get_failure_count(db: Database, listing_id: str) -> int:
    """Number of consecutive runs with a permanent delivery failure.

    Args:
        db: Active database instance.
        listing_id: The listing id.

    Returns:
        The failure count, 0 if none is recorded.
    """
    try:
        conn = await db.get_connection()
        cursor = await conn.execute(
            "SELECT failures FROM delivery_failures WHERE listing_id = ?",
            (listing_id,),
        )
        row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise StateIOError(f"Cannot read delivery failures for {listing_id}: {e}") from e
    return row["failures"] if row is not None else 0


# ═══════════════════════════════════════════════════════════
# Commit
# ═══════════════════════════════════════════════════════════


async def commit_run(
    db: Database,
    delivered: Iterable[Listing],
    failures: Iterable[DeliveryFailure] = (),
    *,
    max_seen: int = 1000,
    retention_days: int = 0,
    suppress_after_failures: int = 0,
    now: Optional[datetime] = None,
) -> CommitResult:
    """Persist the outcome of a run in a single transaction.

    Steps:
      1. Add every delivered listing to the SeenSet and clear its
         failure record.
      2. Count permanent failures; with suppress_after_failures > 0,
         a listing reaching the threshold is added as 'suppressed'.
      3. Prune rows older than retention_days (if > 0) and everything
         beyond the newest max_seen rows. Rows written by this commit
         are never pruned.

    Args:
        db: Active database instance.
        delivered: Listings delivered successfully this run.
        failures: Listings that failed delivery this run.
        max_seen: Upper bound on the SeenSet size.
        retention_days: Drop rows older than this many days (0 = keep).
        suppress_after_failures: Permanent-failure threshold (0 = never).
        now: Commit timestamp override.

    Returns:
        A CommitResult describing the changes.

    Raises:
        StateIOError: If the transaction fails; nothing is persisted then.
    """
    stamp = (now or _utcnow()).isoformat()
    result = CommitResult()

    conn = await db.get_connection()
    try:
        for listing in delivered:
            d = listing.to_db_dict()
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO seen_listings (listing_id, title, url, outcome, seen_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (d["listing_id"], d["title"], d["url"], OUTCOME_DELIVERED, stamp),
            )
            result.added += cursor.rowcount
            await conn.execute(
                "DELETE FROM delivery_failures WHERE listing_id = ?",
                (listing.listing_id,),
            )

        for failure in failures:
            if not failure.permanent:
                continue
            suppressed = await _record_permanent_failure(
                conn, failure, stamp, suppress_after_failures,
            )
            if suppressed:
                result.suppressed.append(failure.listing.listing_id)

        result.pruned = await _prune(conn, stamp, max_seen, retention_days, now or _utcnow())

        await conn.commit()
    except aiosqlite.Error as e:
        await conn.rollback()
        raise StateIOError(f"Cannot commit seen listings: {e}") from e

    logger.debug(
        "Committed run: %d added, %d suppressed, %d pruned",
        result.added, len(result.suppressed), result.pruned,
    )
    return result


async def _record_permanent_failure(
    conn: aiosqlite.Connection,
    failure: DeliveryFailure,
    stamp: str,
    threshold: int,
) -> bool:
    """Bump the failure counter; returns True if the listing got suppressed."""
    listing = failure.listing
    await conn.execute(
        """
        INSERT INTO delivery_failures (listing_id, failures, last_error, last_failed_at)
        VALUES (?, 1, ?, ?)
        ON CONFLICT(listing_id) DO UPDATE SET
            failures = failures + 1,
            last_error = excluded.last_error,
            last_failed_at = excluded.last_failed_at
        """,
        (listing.listing_id, failure.reason[:500], stamp),
    )

    if threshold <= 0:
        return False

    cursor = await conn.execute(
        "SELECT failures FROM delivery_failures WHERE listing_id = ?",
        (listing.listing_id,),
    )
    row = await cursor.fetchone()
    if row is None or row["failures"] < threshold:
        return False

    d = listing.to_db_dict()
    await conn.execute(
        """
        INSERT OR IGNORE INTO seen_listings (listing_id, title, url, outcome, seen_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (d["listing_id"], d["title"], d["url"], OUTCOME_SUPPRESSED, stamp),
    )
    await conn.execute(
        "DELETE FROM delivery_failures WHERE listing_id = ?",
        (listing.listing_id,),
    )
    logger.error(
        "Listing %s failed permanently in %d runs, suppressing it: %s",
        listing.listing_id, row["failures"], failure.reason,
    )
    return True


async def _prune(
    conn: aiosqlite.Connection,
    stamp: str,
    max_seen: int,
    retention_days: int,
    now: datetime,
) -> int:
    """Bound the SeenSet. Rows stamped with this commit are kept."""
    pruned = 0

    if retention_days > 0:
        cutoff = (now - timedelta(days=retention_days)).isoformat()
        cursor = await conn.execute(
            "DELETE FROM seen_listings WHERE seen_at < ? AND seen_at <> ?",
            (cutoff, stamp),
        )
        pruned += max(cursor.rowcount, 0)

    if max_seen > 0:
        cursor = await conn.execute(
            """
            DELETE FROM seen_listings
            WHERE seen_at <> ?
              AND listing_id NOT IN (
                SELECT listing_id FROM seen_listings
                ORDER BY seen_at DESC, rowid DESC
                LIMIT ?
              )
            """,
            (stamp, max_seen),
        )
        pruned += max(cursor.rowcount, 0)

    if pruned:
        logger.info("Pruned %d old seen listings", pruned)
    return pruned


async def count_seen(db: Database) -> int:
    """Number of rows in the SeenSet.

    Args:
        db: Active database instance.
    """
    try:
        conn = await db.get_connection()
        cursor = await conn.execute("SELECT COUNT(*) AS cnt FROM seen_listings")
        row = await cursor.fetchone()
    except aiosqlite.Error as e:
        raise StateIOError(f"Cannot count seen listings: {e}") from e
    return row["cnt"]
