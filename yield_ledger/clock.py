"""
Time sources. Ledger time is integer seconds; two calls in the same
second share one instant.
"""

import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Source of the current ledger instant"""

    @abstractmethod
    def now(self) -> int:
        pass


class SystemClock(Clock):
    """Wall-clock seconds since the epoch"""

    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """Clock advanced explicitly; used for tests and replays"""

    def __init__(self, start: int = 1):
        self._now = start

    def now(self) -> int:
        return self._now

    def set(self, timestamp: int) -> None:
        if timestamp < self._now:
            raise ValueError(f"Clock cannot move backwards: {timestamp} < {self._now}")
        self._now = timestamp

    def advance(self, seconds: int = 1) -> int:
        self.set(self._now + seconds)
        return self._now
