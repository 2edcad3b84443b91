"""
Time sources for the timer.

Elapsed time is always measured on the monotonic clock; the wall clock is
only used to stamp history records.
"""

import time
from typing import Protocol


class Clock(Protocol):
    """Millisecond time source."""

    def monotonic_millis(self) -> int:
        """Suspend-safe counter, unaffected by wall-clock adjustments."""
        ...

    def wall_clock_millis(self) -> int:
        """Milliseconds since the epoch."""
        ...


class SystemClock:
    """Clock backed by ``time.monotonic()`` and ``time.time()``."""

    def monotonic_millis(self) -> int:
        return int(time.monotonic() * 1000)

    def wall_clock_millis(self) -> int:
        return int(time.time() * 1000)
