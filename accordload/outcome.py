"""Outcome vocabulary and failure classification.

This module maps typed store failures onto the outcome vocabulary that
history checkers understand:

- ok:    the operation definitely took effect
- fail:  the operation definitely did not take effect
- info:  the store gave no confirmation; the effect may or may not have
         applied
- error: an unclassified failure, recorded with diagnostic text

Success-side classification (condition satisfied or not) is decided by the
workload that interprets the returned rows. Everything that surfaces as a
StoreFailure is classified here, by a pure function.

Key types:
- OutcomeType: The four terminal result types (plus INVOKE)
- FailureCategory: The fixed set of store failure kinds
- StoreFailure: Exception raised by the executor adapter
- Outcome: Immutable classification result
- classify(): The failure-to-outcome mapping
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


# Fixed delay applied before reporting a no-host failure, in seconds
DEFAULT_NOHOST_BACKOFF_S = 1.0


class OutcomeType(Enum):
    """Event types of a history."""
    INVOKE = "invoke"
    OK = "ok"
    FAIL = "fail"
    INFO = "info"
    ERROR = "error"


class FailureCategory(Enum):
    """Store failure kinds surfaced by the executor adapter.

    UNAVAILABLE:       coordinator lacks enough live replicas; not attempted
    READ_TIMEOUT:      replicas did not acknowledge a read in time
    WRITE_TIMEOUT:     replicas did not acknowledge a write in time
    OPERATION_TIMEOUT: client heard nothing back within its read timeout
    NO_HOST_AVAILABLE: no host could be contacted at all
    UNEXPECTED:        anything else
    """
    UNAVAILABLE = "unavailable"
    READ_TIMEOUT = "read-timed-out"
    WRITE_TIMEOUT = "write-timed-out"
    OPERATION_TIMEOUT = "op-timed-out"
    NO_HOST_AVAILABLE = "nohost"
    UNEXPECTED = "unhandled-exception"


class StoreFailure(Exception):
    """A store operation failed with a known category."""

    def __init__(self, category: FailureCategory, details: Optional[str] = None):
        self.category = category
        self.details = details
        super().__init__(f"{category.value}: {details}" if details else category.value)


@dataclass(frozen=True)
class Outcome:
    """Classified result of a failed store operation.

    Attributes:
        type: Terminal event type (fail, info or error)
        cause: Cause tag written to the history
        details: Diagnostic text (error outcomes only)
        backoff_s: Delay to sleep before the result is emitted
    """
    type: OutcomeType
    cause: str
    details: Optional[str] = None
    backoff_s: float = 0.0


_CLASSIFICATION = {
    FailureCategory.UNAVAILABLE: OutcomeType.FAIL,
    FailureCategory.READ_TIMEOUT: OutcomeType.INFO,
    FailureCategory.WRITE_TIMEOUT: OutcomeType.INFO,
    FailureCategory.OPERATION_TIMEOUT: OutcomeType.INFO,
    FailureCategory.NO_HOST_AVAILABLE: OutcomeType.FAIL,
    FailureCategory.UNEXPECTED: OutcomeType.ERROR,
}


def classify(
    failure: StoreFailure,
    nohost_backoff_s: float = DEFAULT_NOHOST_BACKOFF_S,
) -> Outcome:
    """Map a StoreFailure onto its history outcome.

    Timeouts are always ``info``: a timed-out operation may have been
    applied server-side, and reporting it as ``fail`` would assert to the
    checker that it was not.

    Args:
        failure: Failure raised by the executor adapter.
        nohost_backoff_s: Backoff attached to no-host failures.

    Returns:
        Outcome carrying the type, cause tag, and any backoff.
    """
    category = failure.category
    outcome_type = _CLASSIFICATION[category]

    if category is FailureCategory.NO_HOST_AVAILABLE:
        return Outcome(type=outcome_type, cause=category.value, backoff_s=nohost_backoff_s)
    if category is FailureCategory.UNEXPECTED:
        return Outcome(type=outcome_type, cause=category.value, details=failure.details)
    return Outcome(type=outcome_type, cause=category.value)
