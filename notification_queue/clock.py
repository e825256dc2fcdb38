"""
Notification Queue - Clock.

============================================================
RESPONSIBILITY
============================================================
Injectable millisecond clock for every time-dependent component.

- Queue timestamps, rate-limit windows, backoff and cache TTL
  all read time from a Clock instance
- MockClock makes wait-time and backoff arithmetic deterministic
  in tests

============================================================
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Optional


class Clock(ABC):
    """Abstract clock returning epoch milliseconds."""

    @abstractmethod
    def now_ms(self) -> int:
        """Current time in epoch milliseconds."""


class SystemClock(Clock):
    """Production clock using wall-clock time."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class MockClock(Clock):
    """
    Mock clock for testing.

    Time only moves when advanced explicitly.
    """

    def __init__(self, initial_ms: Optional[int] = None):
        """
        Initialize mock clock.

        Args:
            initial_ms: Starting time (defaults to current wall-clock time)
        """
        self._now_ms = initial_ms if initial_ms is not None else int(time.time() * 1000)
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            return self._now_ms

    def set_time(self, timestamp_ms: int) -> None:
        """Jump to an absolute time."""
        with self._lock:
            self._now_ms = int(timestamp_ms)

    def advance(self, seconds: float = 0, milliseconds: int = 0) -> None:
        """Advance time."""
        with self._lock:
            self._now_ms += int(seconds * 1000) + int(milliseconds)


_default_clock = SystemClock()


def get_default_clock() -> Clock:
    """Shared production clock."""
    return _default_clock
