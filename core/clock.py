"""
core/clock.py -- Injectable wall-clock source.

Every TTL, expiry and rate-limit window computation reads time through a
Clock so tests can pin "now" and step it deterministically. Production code
uses SystemClock; tests use FrozenClock.
"""

from __future__ import annotations

import threading
import time


class Clock:
    """Interface: now() returns seconds since the epoch as a float."""

    def now(self) -> float:
        raise NotImplementedError

    def now_int(self) -> int:
        """Whole seconds, as stored in token claims and store rows."""
        return int(self.now())


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class FrozenClock(Clock):
    """A clock that only moves when told to.

    Usage:
        clock = FrozenClock(1_700_000_000)
        clock.advance(60)
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def set(self, value: float) -> None:
        with self._lock:
            self._now = float(value)
