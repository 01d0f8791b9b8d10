"""
Blocking scheduler driving reconciliation passes.

Passes are started by a periodic timer, by a manual trigger (SIGUSR1) or not
at all once a stop is requested. Passes never overlap: they run in the
scheduler's own thread one after another.
"""

import signal
import time
import logging
import threading
from datetime import timedelta
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs ``sync_func`` on a timer and on demand until stopped."""

    def __init__(self, sync_func: Callable[[], object], interval: Optional[timedelta] = None):
        """
        Initialize scheduler.

        Args:
            sync_func: Function running one pass
            interval: Time between timer-driven passes; empty or zero disables the timer
        """
        self.sync_func = sync_func
        self.interval = interval.total_seconds() if interval else 0
        self.passes_run = 0

        self._wakeup = threading.Event()
        self._trigger = threading.Event()
        self._stop = threading.Event()

    def trigger(self):
        """Request a manual pass."""
        self._trigger.set()
        self._wakeup.set()

    def stop(self):
        """Request the loop to exit after the pass in progress, if any."""
        self._stop.set()
        self._wakeup.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def install_signal_handlers(self):
        """Trigger passes on SIGUSR1 and stop on SIGTERM/SIGINT. Must be called from the main thread."""
        signal.signal(signal.SIGUSR1, self._handle_trigger_signal)
        signal.signal(signal.SIGTERM, self._handle_stop_signal)
        signal.signal(signal.SIGINT, self._handle_stop_signal)

    def _handle_trigger_signal(self, signum, frame):
        logger.info("Received SIGUSR1")
        self.trigger()

    def _handle_stop_signal(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        self.stop()

    def run(self):
        """Block until :meth:`stop` is called, running passes as they are due."""
        logger.info("Starting the scheduler")
        if self.interval <= 0:
            logger.info("app.sync_interval is not specified or is not greater than zero, "
                        "auto sync is disabled. Send SIGUSR1 for manual sync.")

        next_tick = time.monotonic() + self.interval if self.interval > 0 else None
        while not self._stop.is_set():
            timeout = None
            if next_tick is not None:
                timeout = max(0.0, next_tick - time.monotonic())
            self._wakeup.wait(timeout)
            self._wakeup.clear()

            if self._stop.is_set():
                break

            if self._trigger.is_set():
                self._trigger.clear()
                logger.info("Running manually triggered sync")
                self._run_pass()
            elif next_tick is not None and time.monotonic() >= next_tick:
                logger.debug("Received next tick")
                self._run_pass()

            # Ticks missed during a long pass are dropped
            if next_tick is not None:
                now = time.monotonic()
                while next_tick <= now:
                    next_tick += self.interval

        logger.info("Stopping the scheduler")

    def _run_pass(self):
        try:
            self.sync_func()
        except Exception as e:
            logger.error(f"Sync pass failed with unexpected error: {e}", exc_info=True)
        finally:
            self.passes_run += 1
