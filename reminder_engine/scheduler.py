"""Recurring timer that drives the reminder orchestrator.

One daemon thread waits on a stop event between ticks, so ``stop()`` takes
effect immediately instead of after a full interval.  Ticks never overlap:
the orchestrator's run lock rejects a second concurrent tick, and
``trigger_now`` runs through the same lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .orchestrator import ReminderOrchestrator, TickResult

logger = logging.getLogger(__name__)


class ReminderScheduler:
    """Runs ``orchestrator.run_tick()`` every ``interval_seconds``."""

    def __init__(
        self,
        orchestrator: ReminderOrchestrator,
        interval_seconds: float = 6 * 3600,
        run_immediately: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.orchestrator = orchestrator
        self.interval_seconds = float(interval_seconds)
        self.run_immediately = run_immediately
        self._clock = clock or datetime.now

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._started_at: Optional[datetime] = None
        self._next_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the timer thread.  Returns False if it is already running."""
        with self._lock:
            if self.is_running:
                logger.warning("Reminder scheduler is already running")
                return False
            self._stop_event.clear()
            self._started_at = self._clock()
            self._thread = threading.Thread(
                target=self._loop, name="reminder-scheduler", daemon=True
            )
            self._thread.start()
        logger.info("Reminder scheduler started (every %.0fs)", self.interval_seconds)
        return True

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to exit and wait for the in-flight tick, if any."""
        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread is not None:
            thread.join(timeout)
        with self._lock:
            if self._thread is thread and (thread is None or not thread.is_alive()):
                self._thread = None
                self._next_run_at = None
        logger.info("Reminder scheduler stopped")

    def trigger_now(self) -> TickResult:
        """Run a tick on the calling thread (skipped if one is in flight)."""
        logger.info("Manual reminder tick triggered")
        return self.orchestrator.run_tick()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called.  Returns True if stopped."""
        return self._stop_event.wait(timeout)

    def status(self) -> dict:
        with self._lock:
            next_run = self._next_run_at
            started = self._started_at
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "started_at": started.isoformat() if started and self.is_running else None,
            "next_run_at": next_run.isoformat() if next_run else None,
            "orchestrator": self.orchestrator.status(),
        }

    def _loop(self) -> None:
        if self.run_immediately and not self._stop_event.is_set():
            self._tick()
        while True:
            with self._lock:
                self._next_run_at = self._clock() + timedelta(seconds=self.interval_seconds)
            if self._stop_event.wait(self.interval_seconds):
                break
            self._tick()

    def _tick(self) -> None:
        try:
            self.orchestrator.run_tick()
        except Exception:
            # run_tick reports its own failures; this guards the timer thread
            logger.exception("Reminder tick raised; scheduler keeps running")
