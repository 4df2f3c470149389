"""Operation history: event types, recorder, and offline loading.

The history is the only artifact checkers consume. Each event is written
as exactly one line, under a lock that also covers timestamping, so
concurrently running workers never interleave partial records.

Line order reflects emission interleaving. Consumers should order by
``time`` and group by ``process`` (and ``tid``), never rely on line order
across workers.

Key types:
- MicroOp: One read/write/append inside a transaction value
- Operation: Immutable history event
- HistoryRecorder: Thread-safe line-delimited sink
- load_history() / export_parquet(): Offline analysis helpers
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, NamedTuple, Optional, TextIO

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from accordload.clock import Clock
from accordload.outcome import Outcome, OutcomeType

logger = logging.getLogger(__name__)

# Micro-operation kinds, as Elle names them
READ = "r"
WRITE = "w"
APPEND = "append"

# Optional tags, in output order
_TAG_FIELDS = ("register", "tid", "step", "n")

# Values that become EDN keywords rather than strings
_KEYWORD_FIELDS = frozenset({"type", "f", "cause"})


class MicroOp(NamedTuple):
    """One micro-operation of a transaction: ``[kind, register, value]``."""
    kind: str
    register: int
    value: Any = None


@dataclass(frozen=True)
class Operation:
    """A single history event.

    An invoke and its completion share every field except ``type``,
    ``time``, the failure annotations, and (for reads) ``value``.
    """
    type: OutcomeType
    f: str
    value: Any
    process: Optional[int] = None
    time: Optional[int] = None

    # Model-specific tags
    register: Optional[int] = None
    tid: Optional[int] = None
    step: Optional[int] = None
    n: Optional[int] = None

    # Failure annotations
    cause: Optional[str] = None
    details: Optional[str] = None

    def with_process(self, process: int) -> Operation:
        return dataclasses.replace(self, process=process)

    def ok(self, value: Any = dataclasses.MISSING) -> Operation:
        """Completion that definitely took effect, optionally with observed value."""
        if value is dataclasses.MISSING:
            return dataclasses.replace(self, type=OutcomeType.OK, time=None)
        return dataclasses.replace(self, type=OutcomeType.OK, time=None, value=value)

    def fail(self) -> Operation:
        """Completion that definitely did not take effect."""
        return dataclasses.replace(self, type=OutcomeType.FAIL, time=None)

    def resolve(self, outcome: Outcome) -> Operation:
        """Completion for a classified store failure."""
        return dataclasses.replace(
            self,
            type=outcome.type,
            time=None,
            cause=outcome.cause,
            details=outcome.details,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict in output field order, omitting absent tags."""
        record: Dict[str, Any] = {
            "type": self.type.value,
            "f": self.f,
            "process": self.process,
            "value": _plain(self.value),
        }
        for name in _TAG_FIELDS:
            tag = getattr(self, name)
            if tag is not None:
                record[name] = tag
        record["time"] = self.time
        if self.cause is not None:
            record["cause"] = self.cause
        if self.details is not None:
            record["details"] = self.details
        return record


def _plain(value: Any) -> Any:
    """Convert tuples (micro-ops, CAS pairs) to lists."""
    if isinstance(value, (tuple, list)):
        return [_plain(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Encoders
# ---------------------------------------------------------------------------

def encode_json(op: Operation) -> str:
    return json.dumps(op.to_dict(), separators=(",", ":"))


def _edn_value(value: Any) -> str:
    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, (list, tuple)):
        if isinstance(value, MicroOp):
            kind, register, inner = value
            return f"[:{kind} {_edn_value(register)} {_edn_value(inner)}]"
        return "[" + " ".join(_edn_value(v) for v in value) + "]"
    raise TypeError(f"Cannot encode {type(value).__name__} as EDN")


def encode_edn(op: Operation) -> str:
    """One EDN map per event, as Knossos and Elle read natively."""
    record = op.to_dict()
    record["value"] = op.value
    parts = []
    for key, value in record.items():
        if key in _KEYWORD_FIELDS:
            parts.append(f":{key} :{value}")
        else:
            parts.append(f":{key} {_edn_value(value)}")
    return "{" + ", ".join(parts) + "}"


ENCODERS: Dict[str, Callable[[Operation], str]] = {
    "json": encode_json,
    "edn": encode_edn,
}


# ---------------------------------------------------------------------------
# HistoryRecorder
# ---------------------------------------------------------------------------

class HistoryRecorder:
    """Append-only, mutex-protected history sink.

    Timestamping happens inside the lock, so within one output stream
    ``time`` never decreases from line to line.
    """

    def __init__(self, stream: TextIO, clock: Clock, fmt: str = "json"):
        if fmt not in ENCODERS:
            raise ValueError(f"Unknown history format {fmt!r}. Valid: {sorted(ENCODERS)}")
        self._stream = stream
        self._clock = clock
        self._encode = ENCODERS[fmt]
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        """Events recorded so far."""
        with self._lock:
            return self._count

    def record(self, op: Operation) -> Operation:
        """Timestamp ``op``, write it as one line, and return the stamped event."""
        with self._lock:
            stamped = dataclasses.replace(op, time=self._clock.now())
            self._stream.write(self._encode(stamped) + "\n")
            self._stream.flush()
            self._count += 1
        return stamped

    def flush(self) -> None:
        with self._lock:
            self._stream.flush()


# ---------------------------------------------------------------------------
# Offline helpers
# ---------------------------------------------------------------------------

def load_history(path: str) -> pd.DataFrame:
    """Load a JSON-lines history, ordered by logical time.

    The sort is stable, so events with equal timestamps keep their
    emission order. Integer tag columns use the nullable Int64 dtype since
    tags are absent on some models.
    """
    records = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line:
                records.append(json.loads(line))

    if not records:
        return pd.DataFrame()

    frame = pd.DataFrame.from_records(records)
    for column in ("process", "time") + _TAG_FIELDS:
        if column in frame.columns:
            frame[column] = frame[column].astype("Int64")
    return frame.sort_values("time", kind="stable").reset_index(drop=True)


def export_parquet(frame: pd.DataFrame, path: str) -> None:
    """Write a history frame to parquet.

    ``value`` is heterogeneous (scalars, pairs, micro-op lists), so it is
    stored JSON-encoded.
    """
    out = frame.copy()
    if "value" in out.columns:
        out["value"] = out["value"].map(json.dumps)
    table = pa.Table.from_pandas(out, preserve_index=False)
    pq.write_table(table, path, compression="snappy")
    logger.info(f"Exported {len(out)} events to {path}")
