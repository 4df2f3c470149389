"""Logical clock for history timestamps.

A Clock reads a monotonic local time source and shifts it so that the
first reading lands on a configured start offset. All workers share one
Clock; its offset is fixed at construction and never mutated.
"""

from __future__ import annotations

import time
from typing import Callable


class Clock:
    """Monotonic nanosecond timeline starting at ``start_time_ns``.

    Usage:
        clock = Clock(start_time_ns=1000)
        clock.now()  # ~1000, then increasing
    """

    def __init__(
        self,
        start_time_ns: int = 0,
        source: Callable[[], int] = time.monotonic_ns,
    ):
        self._source = source
        self._offset = start_time_ns - source()

    @property
    def offset_ns(self) -> int:
        return self._offset

    def now(self) -> int:
        """Current logical time in nanoseconds."""
        return self._offset + self._source()
