"""
Monthly balance reset scheduling.

Resets every active user's balance to their default once per calendar
month, on the configured day or at the first check after it (catch-up).

State machine::

    UNINITIALIZED --initialize()--> RUNNING --stop()--> STOPPED
                                       ^                   |
                                       +---initialize()----+
"""

import calendar
import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .clock import PeriodicTask, SystemClock
from ..config.loader import MeterConfig
from ..storage.repository import BalanceLedger, ResetStateStore

logger = logging.getLogger(__name__)

CHECK_INTERVAL = timedelta(hours=1)


class SchedulerState(Enum):
    """Lifecycle states of the reset scheduler."""
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    STOPPED = "stopped"


def last_day_of_month(date: datetime) -> int:
    return calendar.monthrange(date.year, date.month)[1]


def effective_reset_day(configured_day: int, date: datetime) -> int:
    """Configured reset day, pulled back to the last day of short months."""
    return min(configured_day, last_day_of_month(date))


def same_calendar_month(first: datetime, second: datetime) -> bool:
    """Whether two instants fall in the same month and year.

    Aware timestamps are compared in ``second``'s timezone.
    """
    if first.tzinfo is not None and second.tzinfo is not None:
        first = first.astimezone(second.tzinfo)
    return (first.year, first.month) == (second.year, second.month)


class ResetScheduler:
    """Recurring due-check that applies the monthly balance reset."""

    def __init__(
        self,
        config: MeterConfig,
        ledger: BalanceLedger,
        state_store: ResetStateStore,
        clock=None,
        interval: timedelta = CHECK_INTERVAL,
    ):
        """Initialize the scheduler.

        Args:
            config: Metering configuration (reset day)
            ledger: Ledger used for the bulk reset
            state_store: Persisted last-reset timestamp
            clock: Clock providing ``now()`` and ``call_every()``
            interval: Time between due-checks
        """
        self.config = config
        self.ledger = ledger
        self.state_store = state_store
        self.clock = clock or SystemClock()
        self.interval = interval
        self.state = SchedulerState.UNINITIALIZED
        self._task: Optional[PeriodicTask] = None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.auto_reset_enabled

    @property
    def configured_reset_day(self) -> int:
        return self.config.configured_reset_day

    @property
    def is_running(self) -> bool:
        """True while a periodic due-check is scheduled."""
        return self._task is not None and self._task.active

    def effective_reset_day(self, date: Optional[datetime] = None) -> int:
        date = date or self.clock.now()
        return effective_reset_day(self.configured_reset_day, date)

    def should_reset_now(self, date: Optional[datetime] = None) -> bool:
        """Decide whether the monthly reset is due at ``date``.

        Due once the effective reset day has been reached, unless a reset
        was already recorded in the same calendar month. A missed reset
        day is therefore caught up at the next check.
        """
        if not self.enabled:
            return False

        date = date or self.clock.now()
        if date.day < self.effective_reset_day(date):
            return False

        last_reset = self.state_store.get_last_reset()
        if last_reset is not None and same_calendar_month(last_reset, date):
            return False

        return True

    def tick(self) -> Optional[int]:
        """Run one due-check, resetting balances if due.

        Errors are logged and swallowed; the next check retries.

        Returns:
            Number of users reset, or None if no reset happened
        """
        try:
            now = self.clock.now()
            if not self.should_reset_now(now):
                return None

            effective = self.effective_reset_day(now)
            note = "reset day" if now.day == effective else "catch-up"
            logger.info(
                "%s triggered (configured=%d, effective=%d, today=%d). "
                "Resetting all balances to default...",
                note, self.configured_reset_day, effective, now.day,
            )
            count = self.ledger.reset_all()
            self.state_store.set_last_reset(self.clock.now())
            logger.info("Successfully reset balances for %d users", count)
            return count
        except Exception:
            logger.exception("Error during auto-reset check")
            return None

    def initialize(self) -> None:
        """Start the scheduler; a no-op if it is already running."""
        with self._lock:
            if self.state is SchedulerState.RUNNING:
                logger.debug("Scheduler already initialized, skipping")
                return

            self.state = SchedulerState.RUNNING
            if not self.enabled:
                logger.info("Auto-reset disabled (BALANCE_RESET_DAY=%d)", self.config.reset_day)
                return

            logger.info(
                "Initializing scheduler (configured reset day: %d, effective this month: %d)",
                self.configured_reset_day, self.effective_reset_day(),
            )
            self.tick()
            self._task = self.clock.call_every(self.interval, self.tick, name="balance-reset")
            logger.info("Scheduler started, checking every %s", self.interval)

    def stop(self) -> None:
        """Cancel the periodic due-check; ``initialize()`` may be called again."""
        with self._lock:
            if self._task is not None:
                self._task.cancel()
                self._task = None
            if self.state is SchedulerState.RUNNING:
                logger.info("Scheduler stopped")
            self.state = SchedulerState.STOPPED

    def status(self) -> Dict[str, Any]:
        """Scheduler configuration and liveness."""
        return {
            "enabled": self.enabled,
            "reset_day": self.configured_reset_day,
            "effective_reset_day": self.effective_reset_day(),
            "is_running": self.is_running,
        }
