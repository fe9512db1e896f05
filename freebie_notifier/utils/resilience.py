"""Freebie Notifier — Circuit Breaker.

Guards the Telegram channel within one run. When Telegram stops
answering, every remaining listing would otherwise spend its full retry
budget; once the breaker is open they fail at once and stay unseen for
the next run.

Only outages count. The caller decides which errors still prove the
service is up (Telegram answered, it just rejected one message); those
pass through and count as a sign of life.

States:
  CLOSED    → deliveries go through
  OPEN      → Telegram is down, deliveries fail immediately
  HALF_OPEN → cooldown over, the next delivery decides

Usage:
    cb = CircuitBreaker(
        "telegram", failure_threshold=5, cooldown_seconds=300,
        is_outage=lambda e: not getattr(e, "permanent", False),
    )
    message_id = await cb.call(notifier._deliver, listing)
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Optional

from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)


class CircuitOpenError(Exception):
    """The guarded service is considered down; nothing was sent."""

    def __init__(self, name: str, remaining_seconds: float) -> None:
        self.name = name
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"{name} circuit is OPEN after repeated failures, "
            f"next attempt in {remaining_seconds:.0f}s"
        )


class CircuitBreaker:
    """Consecutive-outage counter around an async call.

    Attributes:
        name: Service name used in log lines and errors.
        failure_threshold: Outages in a row that open the circuit.
        cooldown_seconds: How long an open circuit rejects calls.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        is_outage: Optional[Callable[[Exception], bool]] = None,
    ) -> None:
        """Initialize the circuit breaker.

        Args:
            name: Service name for logging.
            failure_threshold: Consecutive outages before opening.
            cooldown_seconds: Seconds to stay open before half-open.
            is_outage: Decides whether an error counts against the
                service. Defaults to counting every error.
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._is_outage = is_outage or (lambda e: True)

        self._state = self.CLOSED
        self._outages = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        """Current state; an expired OPEN reads as HALF_OPEN."""
        if self._state == self.OPEN and self.remaining_cooldown == 0.0:
            return self.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == self.OPEN

    @property
    def remaining_cooldown(self) -> float:
        if self._state != self.OPEN:
            return 0.0
        return max(0.0, self.cooldown_seconds - (time.monotonic() - self._opened_at))

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await func(*args, **kwargs) unless the circuit is open.

        Raises:
            CircuitOpenError: If the circuit is OPEN.
            Exception: Whatever func raised, after it was counted.
        """
        state = self.state
        if state == self.OPEN:
            raise CircuitOpenError(self.name, self.remaining_cooldown)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self._is_outage(e):
                self._record_outage(state, e)
            else:
                self._record_alive(state)
            raise

        self._record_alive(state)
        return result

    def _record_alive(self, state: str) -> None:
        if state == self.HALF_OPEN:
            logger.info("%s answered again, circuit closed", self.name)
        self._state = self.CLOSED
        self._outages = 0

    def _record_outage(self, state: str, error: Exception) -> None:
        self._outages += 1
        if state != self.HALF_OPEN and self._outages < self.failure_threshold:
            logger.debug(
                "%s outage %d/%d: %s",
                self.name, self._outages, self.failure_threshold, type(error).__name__,
            )
            return

        self._state = self.OPEN
        self._opened_at = time.monotonic()
        logger.warning(
            "%s circuit OPEN for %.0fs after %d consecutive outages: %s",
            self.name, self.cooldown_seconds, self._outages, str(error)[:200],
        )
