"""Freebie Notifier — SQLite Connection Manager.

Async SQLite connection management using aiosqlite. The database is
the durable memory between runs: the set of listing ids already
notified (SeenSet) and the delivery-failure bookkeeping.

SQLite transactions give the commit its all-or-nothing property: a
process killed mid-commit leaves the previous state on disk.
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)

# ── Schema Definitions ────────────────────────────────────
SCHEMA_SQL = """
-- ═══ Seen Listings ═══
-- Listings that must never be notified again.
CREATE TABLE IF NOT EXISTS seen_listings (
    listing_id  TEXT    PRIMARY KEY,
    title       TEXT    DEFAULT '',
    url         TEXT    DEFAULT '',
    outcome     TEXT    NOT NULL DEFAULT 'delivered',
    seen_at     TEXT    NOT NULL
);

-- ═══ Delivery Failures ═══
-- Consecutive runs in which a listing could not be delivered permanently.
CREATE TABLE IF NOT EXISTS delivery_failures (
    listing_id      TEXT    PRIMARY KEY,
    failures        INTEGER NOT NULL DEFAULT 0,
    last_error      TEXT    DEFAULT '',
    last_failed_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_seen_seen_at ON seen_listings(seen_at);
"""


class StateIOError(Exception):
    """Raised when the SeenSet cannot be loaded or committed."""


class Database:
    """Async SQLite database connection manager.

    Attributes:
        db_path: Resolved absolute path to the SQLite database file.
    """

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the database manager.

        Args:
            db_path: Relative or absolute path to the SQLite database file.
                     Parent directories are created on initialize().
        """
        self.db_path = Path(db_path).resolve()
        self._connection: aiosqlite.Connection | None = None
        logger.debug("Database manager initialized with path: %s", self.db_path)

    async def initialize(self) -> None:
        """Open the connection and create the schema if needed.

        Raises:
            StateIOError: If the file cannot be opened or the schema created.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(str(self.db_path))
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=FULL")
            self._connection.row_factory = aiosqlite.Row
            await self._connection.executescript(SCHEMA_SQL)
            await self._connection.commit()
        except (aiosqlite.Error, OSError) as e:
            await self.close()
            raise StateIOError(f"Cannot open state database {self.db_path}: {e}") from e

        logger.debug("Database ready: %s", self.db_path)

    async def get_connection(self) -> aiosqlite.Connection:
        """Get the active connection, initializing if necessary.

        Returns:
            The active aiosqlite connection.
        """
        if self._connection is None:
            await self.initialize()
        return self._connection

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.debug("Database connection closed")

    async def __aenter__(self) -> "Database":
        await self.initialize()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
