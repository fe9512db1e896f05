"""Freebie Notifier — Run Lock.

Advisory lock file that keeps two invocations from running at the same
time. The scheduler cannot guarantee the previous run has finished, so
each run creates the lock file exclusively and removes it on exit.
The holder refreshes the file's mtime as it makes progress; a lock not
refreshed within the staleness timeout belongs to a run that died
without cleaning up and is reclaimed.

Usage:
    with RunLock(Path("data/run.lock"), stale_after_seconds=900) as lock:
        ...
        lock.refresh()
"""

from __future__ import annotations

import json
import os
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)


class LockBusyError(Exception):
    """Raised when another run holds a non-stale lock."""

    def __init__(self, path: Path, owner: Optional[dict[str, Any]] = None) -> None:
        self.path = path
        self.owner = owner or {}
        pid = self.owner.get("pid", "?")
        since = self.owner.get("acquired_at", "?")
        super().__init__(f"Run lock {path} is held by pid {pid} since {since}")


class LockLostError(Exception):
    """Raised when a held lock was reclaimed by another run."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Run lock {path} was taken over by another run")


class RunLock:
    """Exclusive lock file with a staleness timeout.

    The holder calls refresh() while it works; staleness is measured
    from the last refresh, so only a run that stopped making progress
    loses its lock.

    Attributes:
        path: Location of the lock file.
        stale_after_seconds: Age after which a foreign lock is reclaimed.
    """

    def __init__(self, path: Path | str, stale_after_seconds: float = 900.0) -> None:
        self.path = Path(path)
        self.stale_after_seconds = stale_after_seconds
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        """Whether this instance currently owns the lock."""
        return self._token is not None

    def acquire(self) -> None:
        """Create the lock file, reclaiming it once if it is stale.

        Raises:
            LockBusyError: If another run holds a fresh lock.
            OSError: If the lock directory or file cannot be written.
        """
        if self.held:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            if self._try_create():
                logger.debug("Run lock acquired: %s", self.path)
                return

            owner = self._read_owner()
            age = self._age_seconds()
            if age is None:
                # Vanished between our attempt and the stat; just retry.
                continue
            if age < self.stale_after_seconds:
                raise LockBusyError(self.path, owner)

            logger.warning(
                "Reclaiming stale run lock %s (pid %s, %.0fs old)",
                self.path, owner.get("pid", "?"), age,
            )
            if not self._discard_stale(owner):
                break

        raise LockBusyError(self.path, self._read_owner())

    def refresh(self) -> None:
        """Touch the lock file to show the run is still alive.

        Raises:
            LockLostError: If the lock no longer belongs to this run.
        """
        if not self.held:
            raise LockLostError(self.path)
        if self._read_owner().get("token") != self._token:
            self._token = None
            logger.error("Run lock %s was taken over by another run", self.path)
            raise LockLostError(self.path)
        try:
            os.utime(self.path)
        except FileNotFoundError as e:
            self._token = None
            raise LockLostError(self.path) from e

    def release(self) -> None:
        """Remove the lock file if it is still ours."""
        if not self.held:
            return

        owner = self._read_owner()
        if owner.get("token") == self._token:
            try:
                self.path.unlink()
                logger.debug("Run lock released: %s", self.path)
            except FileNotFoundError:
                pass
        else:
            logger.warning(
                "Run lock %s was taken over by another run, leaving it in place",
                self.path,
            )
        self._token = None

    def _discard_stale(self, stale_owner: dict[str, Any]) -> bool:
        """Move the stale lock aside and delete it.

        The rename is atomic, so of two runs reclaiming at once only one
        moves the stale file. If what got moved is not the stale owner's
        file (another run re-created the lock meanwhile), it is put back.

        Returns:
            False if the lock turned out to be live again.
        """
        aside = self.path.with_name(f"{self.path.name}.{secrets.token_hex(4)}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True

        moved = self._read_owner(aside)
        if moved.get("token") == stale_owner.get("token"):
            aside.unlink()
            return True

        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.warning("Run lock %s re-created twice during reclaim", self.path)
        aside.unlink()
        return False

    def _try_create(self) -> bool:
        """Atomically create the lock file. Returns False if it exists."""
        token = secrets.token_hex(8)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        payload = {
            "pid": os.getpid(),
            "token": token,
            "acquired_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        self._token = token
        return True

    def _read_owner(self, path: Optional[Path] = None) -> dict[str, Any]:
        try:
            data = json.loads((path or self.path).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _age_seconds(self) -> Optional[float]:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()
