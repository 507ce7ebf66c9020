"""
Clock sources for the staking program.

The program never reads wall-clock time directly; it asks the injected
clock.  ``SystemClock`` is used by the server, ``ManualClock`` by tests
and simulations that need exact, repeatable timestamps.
"""

from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int:
        """Current time in whole Unix seconds."""
        ...


class SystemClock:
    """Wall-clock seconds, truncated."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = int(start)
        self._lock = threading.Lock()

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        with self._lock:
            self._now += int(seconds)
            return self._now

    def set(self, timestamp: int) -> None:
        """Jump to *timestamp*.  Going backwards is allowed, to simulate skew."""
        with self._lock:
            self._now = int(timestamp)

    def __repr__(self) -> str:
        return f"ManualClock({self._now})"
