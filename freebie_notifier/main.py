"""Freebie Notifier — Main Orchestrator.

Runs exactly one check per process invocation; an external timer
(cron, systemd) starts the process every few minutes.

One run:
  lock → load SeenSet → fetch + parse pages → filter/dedupe
       → notify each new listing → commit SeenSet → unlock

The SeenSet is only written in the commit step, in one transaction.
A run that fails or is cancelled before that leaves the durable state
untouched, so the next run simply starts over.

Usage:
    python -m freebie_notifier.main [--config PATH] [--env-file PATH] [--dry-run]
    python scripts/run.py
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Callable, Optional

from freebie_notifier.config import AppConfig, load_config
from freebie_notifier.database import queries
from freebie_notifier.database.db import Database, StateIOError
from freebie_notifier.database.models import DeliveryFailure, Listing
from freebie_notifier.notifier.telegram_bot import DeliveryError, TelegramNotifier
from freebie_notifier.scraper.client import FetchError, KleinanzeigenClient
from freebie_notifier.scraper.list_scraper import ParseError
from freebie_notifier.scraper.pipeline import collect_listings
from freebie_notifier.scraper.quick_filter import FilterCriteria, ListingFilter
from freebie_notifier.utils.logger import get_logger, set_level
from freebie_notifier.utils.run_lock import LockBusyError, LockLostError, RunLock

logger = get_logger(__name__)


class RunState(str, Enum):
    """Stages of one run."""

    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    FETCHED = "fetched"
    PARSED = "parsed"
    FILTERED = "filtered"
    NOTIFYING = "notifying"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class ExitCode(IntEnum):
    """Process exit status reported to the scheduler."""

    OK = 0
    FAILED = 1
    LOCK_BUSY = 2
    PARTIAL = 3


@dataclass
class RunSummary:
    """Outcome of one run.

    Attributes:
        state: Final RunState (DONE or FAILED).
        pages_fetched: Search pages requested.
        listings_parsed: Unique listings extracted.
        new_listings: Listings selected for notification.
        delivered: Ids delivered and committed.
        failed: Ids whose delivery failed (retried next run).
        suppressed: Ids committed as suppressed after repeated failures.
        error: The fatal error, if any.
        dry_run: Nothing was sent or committed.
    """

    state: RunState = RunState.IDLE
    pages_fetched: int = 0
    listings_parsed: int = 0
    new_listings: int = 0
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    suppressed: list[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    dry_run: bool = False
    duration_seconds: float = 0.0

    @property
    def exit_code(self) -> ExitCode:
        if isinstance(self.error, LockBusyError):
            return ExitCode.LOCK_BUSY
        if self.state is not RunState.DONE:
            return ExitCode.FAILED
        if self.failed:
            return ExitCode.PARTIAL
        return ExitCode.OK


ClientFactory = Callable[[AppConfig], KleinanzeigenClient]
NotifierFactory = Callable[[AppConfig], TelegramNotifier]


def _default_client_factory(config: AppConfig) -> KleinanzeigenClient:
    return KleinanzeigenClient(config.search)


def _default_notifier_factory(config: AppConfig) -> TelegramNotifier:
    return TelegramNotifier(config.telegram)


class FreebieNotifier:
    """Runs the fetch → filter → notify → commit pipeline once.

    Attributes:
        config: Full application configuration.
        summary: RunSummary of the current/last run.
    """

    def __init__(
        self,
        config: AppConfig,
        client_factory: Optional[ClientFactory] = None,
        notifier_factory: Optional[NotifierFactory] = None,
        dry_run: bool = False,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Full AppConfig instance.
            client_factory: Builds the search client (tests inject fakes).
            notifier_factory: Builds the Telegram notifier (tests inject fakes).
            dry_run: Fetch and filter only; send nothing, commit nothing.
        """
        self.config = config
        self._client_factory = client_factory or _default_client_factory
        self._notifier_factory = notifier_factory or _default_notifier_factory
        self._filter = ListingFilter(FilterCriteria.from_config(config))
        self.dry_run = dry_run
        self.summary = RunSummary(dry_run=dry_run)

    def _transition(self, state: RunState) -> None:
        logger.debug("Run state: %s → %s", self.summary.state.value, state.value)
        self.summary.state = state

    async def run_once(self) -> RunSummary:
        """Execute one complete run.

        Fatal errors (lock busy, fetch, parse, state or lock file I/O)
        end the run in FAILED without touching the SeenSet. Per-listing
        delivery errors are collected; the successful deliveries are
        still committed. A run that loses its lock while sending commits
        what it delivered and then ends in FAILED.

        Returns:
            The RunSummary; see RunSummary.exit_code.
        """
        self.summary = RunSummary(dry_run=self.dry_run)
        start = time.monotonic()
        lock = RunLock(self.config.state.lock_path, self.config.state.lock_stale_after_seconds)

        try:
            with lock:
                self._transition(RunState.LOCK_ACQUIRED)
                async with Database(self.config.state.database_path) as db:
                    await self._run_locked(db, lock)
            self._transition(RunState.DONE)

        except LockBusyError as e:
            self._fail(e, "Another run is active")
        except FetchError as e:
            self._fail(e, "Fetching search results failed")
        except ParseError as e:
            self._fail(e, "Search page not recognized")
        except LockLostError as e:
            self._fail(e, "Run lock lost")
        except StateIOError as e:
            self._fail(e, "State storage failed")
        except OSError as e:
            self._fail(e, "Lock or state file not accessible")
        except asyncio.CancelledError:
            self._transition(RunState.FAILED)
            logger.warning("Run cancelled before commit, seen listings unchanged")
            raise
        finally:
            self.summary.duration_seconds = round(time.monotonic() - start, 1)

        self._log_summary()
        return self.summary

    async def _run_locked(self, db: Database, lock: RunLock) -> None:
        """Pipeline body; runs while holding the lock.

        The lock is refreshed before every page request and every
        delivery. If another run took it over meanwhile, sending stops;
        what was already delivered is still committed, then the run fails.
        """
        cfg = self.config
        seen_ids = await queries.load_seen_ids(db)
        first_run = not seen_ids
        logger.info(
            "%d seen listings loaded%s", len(seen_ids), " (first run)" if first_run else "",
        )

        # ── Fetch + parse ────────────────────────────────
        async with self._client_factory(cfg) as client:
            collected = await collect_listings(
                client, seen_ids, cfg.search.max_pages, heartbeat=lock.refresh,
            )
        self.summary.pages_fetched = collected.pages_fetched
        self._transition(RunState.FETCHED)
        self.summary.listings_parsed = len(collected.listings)
        self._transition(RunState.PARSED)

        # ── Filter ───────────────────────────────────────
        limit = cfg.filter.first_run_limit if first_run and cfg.filter.first_run_limit else None
        new_listings = self._filter.select_new(collected.listings, seen_ids, limit=limit)
        self.summary.new_listings = len(new_listings)
        self._transition(RunState.FILTERED)

        if not new_listings:
            logger.info("No new listings")
            return

        if self.dry_run:
            for listing in new_listings:
                logger.info("[dry-run] Would notify %s: %s", listing.listing_id, listing.title)
            return

        # ── Notify ───────────────────────────────────────
        self._transition(RunState.NOTIFYING)
        delivered, failures, lock_lost = await self._notify(new_listings, lock)

        # ── Commit ───────────────────────────────────────
        self._transition(RunState.COMMITTING)
        result = await queries.commit_run(
            db,
            delivered,
            failures,
            max_seen=cfg.state.max_seen,
            retention_days=cfg.state.retention_days,
            suppress_after_failures=cfg.state.suppress_after_failures,
        )
        self.summary.suppressed = result.suppressed
        logger.info(
            "Committed %d delivered listings (%d suppressed, %d pruned)",
            result.added, len(result.suppressed), result.pruned,
        )

        if lock_lost is not None:
            raise lock_lost

    async def _notify(
        self, listings: list[Listing], lock: RunLock,
    ) -> tuple[list[Listing], list[DeliveryFailure], Optional[LockLostError]]:
        """Deliver listings in order; failures do not stop the loop.

        A lost run lock does: the remaining listings are left for the run
        that now holds it.
        """
        delivered: list[Listing] = []
        failures: list[DeliveryFailure] = []
        lock_lost: Optional[LockLostError] = None

        async with self._notifier_factory(self.config) as notifier:
            for i, listing in enumerate(listings, 1):
                try:
                    lock.refresh()
                except LockLostError as e:
                    lock_lost = e
                    logger.error(
                        "Run lock lost, stopping after %d of %d listings",
                        i - 1, len(listings),
                    )
                    break
                logger.info("  [%d/%d] Notifying %s...", i, len(listings), listing.listing_id)
                try:
                    await notifier.deliver(listing)
                except DeliveryError as e:
                    logger.warning(
                        "Listing %s not delivered, will retry next run: %s",
                        listing.listing_id, e.reason,
                    )
                    failures.append(DeliveryFailure(listing, e.reason, e.permanent))
                    self.summary.failed.append(listing.listing_id)
                    continue
                delivered.append(listing)
                self.summary.delivered.append(listing.listing_id)

        return delivered, failures, lock_lost

    def _fail(self, error: BaseException, message: str) -> None:
        self._transition(RunState.FAILED)
        self.summary.error = error
        if isinstance(error, LockBusyError):
            logger.warning("%s: %s", message, error)
        else:
            logger.error("%s: %s", message, error)
            logger.debug(traceback.format_exc())

    def _log_summary(self) -> None:
        s = self.summary
        logger.info(
            "Run %s in %.1fs | pages: %d | parsed: %d | new: %d | delivered: %d | failed: %d",
            s.state.value, s.duration_seconds, s.pages_fetched, s.listings_parsed,
            s.new_listings, len(s.delivered), len(s.failed),
        )
        if s.failed:
            logger.error("Delivery failed for: %s", ", ".join(s.failed))


# ═══════════════════════════════════════════════════════════
# Entry Point
# ═══════════════════════════════════════════════════════════


def _parse_args(argv: Optional[list[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="freebie-notifier",
        description="Forward new free-to-take kleinanzeigen.de listings to Telegram.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to settings.yaml")
    parser.add_argument("--env-file", type=Path, default=None, help="Path to the .env file")
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Fetch and filter only; send nothing and leave the state untouched",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Application entry point. Returns the process exit code."""
    args = _parse_args(argv)

    try:
        config = load_config(settings_path=args.config, env_path=args.env_file)
        set_level(config.log_level)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Configuration error: %s", e)
        return int(ExitCode.FAILED)

    app = FreebieNotifier(config, dry_run=args.dry_run)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    task = loop.create_task(app.run_once())

    def _signal_handler(sig: int, frame: Any) -> None:
        logger.info("Signal %s received, cancelling run...", sig)
        loop.call_soon_threadsafe(task.cancel)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        summary = loop.run_until_complete(task)
    except asyncio.CancelledError:
        return int(ExitCode.FAILED)
    finally:
        loop.close()

    return int(summary.exit_code)


if __name__ == "__main__":
    sys.exit(main())
