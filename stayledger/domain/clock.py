# stayledger/domain/clock.py

import threading
import time
from typing import Protocol

ONE_DAY = 24 * 60 * 60


class Clock(Protocol):
    """Time source in unix seconds, matching ledger block timestamps."""

    def now(self) -> int:
        ...


class SystemClock:

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """
    Clock that only moves when told to.
    Used by tests and by the in-memory ledger's demo mode.
    """

    def __init__(self, start: int = 1_700_000_000):
        self._now = int(start)
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def set(self, timestamp: int) -> None:
        with self._lock:
            if timestamp < self._now:
                raise ValueError("Clock cannot move backwards")
            self._now = int(timestamp)

    def advance(self, seconds: int) -> int:
        with self._lock:
            if seconds < 0:
                raise ValueError("Clock cannot move backwards")
            self._now += int(seconds)
            return self._now
