"""Snapshot publisher: the live ZoneSet behind a shared/exclusive lock."""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from typing import Iterator, Optional

from .assembler import ZoneSet
from .zone import Zone, canonical_name

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Brief: Writer-preferring reader/writer lock.

    Inputs:
      - None

    Outputs:
      - Lock usable through read_locked() / write_locked(). Not re-entrant:
        a thread holding the read side must not acquire it again while a
        writer is queued.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextlib.contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextlib.contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class SnapshotPublisher:
    """Brief: Owner of the live ZoneSet shared by the refresher and queries.

    Inputs:
      - None

    Outputs:
      - SnapshotPublisher with no published data (ready is False).

    Example:
      >>> pub = SnapshotPublisher()
      >>> pub.current_zone("example.org.") is None
      True
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._live: Optional[ZoneSet] = None
        self._generation = 0
        self._last_published: Optional[float] = None

    def publish(self, zone_set: ZoneSet) -> int:
        """Brief: Replace the whole live set in one step.

        Inputs:
          - zone_set: fully built ZoneSet; it must not be mutated afterwards.

        Outputs:
          - int: new generation number (1 for the first publish).
        """
        published_at = time.time()
        with self._lock.write_locked():
            self._live = zone_set
            self._generation += 1
            self._last_published = published_at
            generation = self._generation
        logger.debug("Published generation %d", generation)
        return generation

    @contextlib.contextmanager
    def read(self) -> Iterator[Optional[ZoneSet]]:
        """Brief: Hold the shared lock for one lookup and yield the live set.

        Outputs:
          - ZoneSet, or None when nothing has been published yet.
        """
        with self._lock.read_locked():
            yield self._live

    def snapshot(self) -> Optional[ZoneSet]:
        with self._lock.read_locked():
            return self._live

    def current_zone(self, name: str) -> Optional[Zone]:
        with self._lock.read_locked():
            live = self._live
            if live is None:
                return None
            return live.zones.get(canonical_name(name))

    def current_reverse(self, name: str) -> Optional[str]:
        with self._lock.read_locked():
            live = self._live
            if live is None:
                return None
            return live.reverse.get(canonical_name(name))

    @property
    def ready(self) -> bool:
        return self.snapshot() is not None

    @property
    def generation(self) -> int:
        with self._lock.read_locked():
            return self._generation

    @property
    def last_published(self) -> Optional[float]:
        with self._lock.read_locked():
            return self._last_published
