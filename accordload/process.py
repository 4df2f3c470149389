"""Process identity tracking.

Every worker acts as one logical process at a time. An indeterminate
(``info``) outcome retires the worker's process id: the checker assumes a
process never starts a new operation before its previous one resolved, so
the worker continues under a freshly issued id.
"""

from __future__ import annotations

import logging
import threading

from accordload.outcome import OutcomeType

logger = logging.getLogger(__name__)


class ProcessTracker:
    """Shared, lock-guarded process id counter.

    Ids start at 1 and are never reused.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    @property
    def issued(self) -> int:
        """Number of ids handed out so far."""
        with self._lock:
            return self._last

    def next_id(self) -> int:
        """Atomically issue a fresh process id."""
        with self._lock:
            self._last += 1
            return self._last

    def retain_or_advance(self, current: int, outcome: OutcomeType) -> int:
        """Return the process id to use for the next operation.

        A new id is issued if and only if the last outcome was ``info``.
        """
        if outcome is OutcomeType.INFO:
            fresh = self.next_id()
            logger.debug(f"Process {current} retired after indeterminate result, continuing as {fresh}")
            return fresh
        return current
