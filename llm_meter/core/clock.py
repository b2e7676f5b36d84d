"""
Clocks and cancellable periodic tasks.

SystemClock runs periodic callbacks on a background thread against wall
time. ManualClock keeps virtual time and fires due callbacks only when
advanced, so time-based logic can be driven deterministically.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Handle for a callback scheduled at a fixed interval."""

    def cancel(self) -> None:
        raise NotImplementedError

    @property
    def active(self) -> bool:
        raise NotImplementedError


class ThreadedPeriodicTask(PeriodicTask):
    """Runs a callback every ``interval`` on a daemon thread."""

    def __init__(self, interval: timedelta, callback: Callable[[], None], name: str = "periodic-task"):
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        # wait() returns True as soon as cancel() is called
        while not self._stopped.wait(self.interval.total_seconds()):
            try:
                self.callback()
            except Exception:
                logger.exception("Periodic task %s failed", self._thread.name)

    def cancel(self) -> None:
        self._stopped.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()


class SystemClock:
    """Wall clock in local time, with thread-backed periodic tasks."""

    def now(self) -> datetime:
        return datetime.now().astimezone()

    def call_every(self, interval: timedelta, callback: Callable[[], None], name: str = "periodic-task") -> PeriodicTask:
        task = ThreadedPeriodicTask(interval, callback, name=name)
        task.start()
        return task


class _ManualTask(PeriodicTask):
    def __init__(self, clock: "ManualClock", interval: timedelta, callback: Callable[[], None]):
        self.clock = clock
        self.interval = interval
        self.callback = callback
        self.next_run = clock.now() + interval
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def active(self) -> bool:
        return not self._cancelled


class ManualClock:
    """Virtual clock; periodic callbacks run only inside ``advance()``."""

    def __init__(self, start: datetime):
        self._now = start
        self._tasks: List[_ManualTask] = []

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime) -> None:
        """Jump to ``when`` without firing any callbacks."""
        self._now = when
        for task in self._tasks:
            task.next_run = when + task.interval

    def call_every(self, interval: timedelta, callback: Callable[[], None], name: Optional[str] = None) -> PeriodicTask:
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        task = _ManualTask(self, interval, callback)
        self._tasks.append(task)
        return task

    def advance(self, delta: timedelta) -> int:
        """Move time forward, firing every callback that falls due in order.

        Returns:
            Number of callbacks fired
        """
        target = self._now + delta
        fired = 0
        while True:
            self._tasks = [t for t in self._tasks if t.active]
            due = [t for t in self._tasks if t.next_run <= target]
            if not due:
                break
            task = min(due, key=lambda t: t.next_run)
            self._now = task.next_run
            task.next_run += task.interval
            task.callback()
            fired += 1
        self._now = target
        return fired
