"""Refresh scheduler: initial synchronous refresh, then a periodic loop."""

from __future__ import annotations

import enum
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SchedulerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class RefreshScheduler:
    """Brief: Drive fetch -> assemble -> publish cycles on a fixed interval.

    Inputs:
      - refresh: callable performing one complete cycle; raises on failure.
      - interval: seconds between cycles; 0 disables the periodic loop.
      - name: thread name for the background loop.

    Outputs:
      - RefreshScheduler in the IDLE state.

    Example:
      >>> calls = []
      >>> s = RefreshScheduler(lambda: calls.append(1), interval=0)
      >>> s.start()
      >>> calls
      [1]
      >>> s.stop()
      >>> s.state
      <SchedulerState.STOPPED: 'stopped'>
    """

    def __init__(
        self,
        refresh: Callable[[], object],
        interval: float,
        name: str = "LdapZonesRefresher",
    ) -> None:
        self._refresh = refresh
        self._interval = max(0.0, float(interval))
        self._name = name
        self._stop_event = threading.Event()
        # Serializes the periodic loop with refresh_now() callers (SIGUSR2).
        self._cycle_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._state = SchedulerState.IDLE
        self.consecutive_failures = 0
        self.last_error: Optional[BaseException] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        """Brief: Run the initial refresh and start the periodic loop.

        Raises:
          - Whatever the initial refresh raises; the scheduler returns to IDLE
            and no thread is started.
          - RuntimeError: when called twice.
        """
        if self._state is not SchedulerState.IDLE:
            raise RuntimeError(f"{self._name} already {self._state.value}")

        self._state = SchedulerState.RUNNING
        try:
            self._run_cycle()
        except Exception:
            self._state = SchedulerState.IDLE
            raise

        if self._interval <= 0:
            logger.info("%s: periodic refresh disabled (interval=0)", self._name)
            return

        thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread = thread
        thread.start()

    def _run_cycle(self) -> None:
        with self._cycle_lock:
            self._refresh()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            if self._stop_event.wait(self._interval):
                break
            self.refresh_now()
        logger.info("%s: refresh loop stopped", self._name)

    def refresh_now(self) -> bool:
        """Brief: Run one cycle on the calling thread.

        Outputs:
          - bool: True on success. Failures are logged and leave the previous
            snapshot live; they are never raised.
        """
        if self._stop_event.is_set():
            return False
        try:
            self._run_cycle()
        except Exception as exc:
            self.consecutive_failures += 1
            self.last_error = exc
            logger.warning(
                "%s: refresh failed (%d in a row); keeping previous snapshot: %s",
                self._name,
                self.consecutive_failures,
                exc,
            )
            return False
        self.consecutive_failures = 0
        self.last_error = None
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Brief: Stop the loop; a cycle already running is allowed to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        self._state = SchedulerState.STOPPED
