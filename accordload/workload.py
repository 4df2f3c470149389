"""Per-model workload generators.

A Workload belongs to exactly one worker. It picks the shape of each
operation, builds the invoke event (without process or time), and later
performs that operation against the store, interpreting the returned rows
as ok or fail. Store failures are not handled here: they propagate as
StoreFailure for the worker to classify.

Models:
- CASRegisterWorkload: read / write / cas on single registers (Knossos)
- RWRegisterWorkload: one- and two-op read/write transactions (Elle)
- ListAppendWorkload: single reads and guarded appends on lists (Elle)

Written values must be unique across the whole run because Elle infers
dependencies from value identity alone. Each worker therefore draws values
from a numeric band no other worker can reach.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from accordload import statements
from accordload.executor import TransactionExecutor
from accordload.history import APPEND, READ, WRITE, MicroOp, Operation
from accordload.outcome import OutcomeType
from accordload.statements import CONTENTS, CONTENTS_1, CONTENTS_2, Statement

logger = logging.getLogger(__name__)

# Widest transaction the rw-register model sizes its value bands for
MAX_OPS_PER_TXN = 5


def _contents(rows: list[dict], column: str = CONTENTS) -> Any:
    """Selected column of the first result row, or None without rows.

    A row lacking ``column`` raises KeyError: guarded writes read a null
    column as "applied", so a misnamed column must not pass for null.
    """
    if not rows:
        return None
    return rows[0][column]


# ---------------------------------------------------------------------------
# Workload ABC
# ---------------------------------------------------------------------------

class Workload(ABC):
    """Operation generator and interpreter for one worker.

    Usage:
        workload.prepare(executor)
        for n in range(1, count + 1):
            op = workload.next_operation(n)
            completion = workload.perform(op.with_process(pid))
    """

    model: str = ""
    templates: Tuple[Statement, ...] = ()

    def __init__(
        self,
        worker_index: int,
        op_count: int,
        register_set: Sequence[int],
        rng: Optional[np.random.RandomState] = None,
    ):
        if not register_set:
            raise ValueError("register_set must not be empty")
        self.worker_index = worker_index
        self.op_count = op_count
        self._registers = tuple(int(r) for r in register_set)
        self._rng = rng if rng is not None else np.random.RandomState()
        self._executor: Optional[TransactionExecutor] = None
        self._prepared: Dict[str, Any] = {}

    def prepare(self, executor: TransactionExecutor) -> None:
        """Prepare every statement this model uses, once."""
        self._executor = executor
        self._prepared = {s.name: executor.prepare(s) for s in self.templates}
        logger.debug(f"Worker {self.worker_index} prepared {len(self._prepared)} {self.model} statements")

    def _execute(self, statement: Statement, params: Sequence[Any]) -> list[dict]:
        if self._executor is None:
            raise RuntimeError("Workload.prepare() must be called before perform()")
        return self._executor.execute(self._prepared[statement.name], params)

    # -- Random choices --

    def _choose(self, options: Sequence[str]) -> str:
        return options[self._rng.randint(len(options))]

    def _register(self) -> int:
        return self._registers[self._rng.randint(len(self._registers))]

    # -- Abstract operations --

    @abstractmethod
    def next_operation(self, n: int) -> Operation:
        """Build the invoke event for this worker's ``n``-th (1-based) operation."""
        ...

    @abstractmethod
    def perform(self, op: Operation) -> Operation:
        """Execute ``op`` and return its ok/fail completion.

        Raises:
            StoreFailure: when the store reports a failure.
        """
        ...


# ---------------------------------------------------------------------------
# cas-register
# ---------------------------------------------------------------------------

class CASRegisterWorkload(Workload):
    """Linearizable register with read, write and compare-and-set.

    Values are drawn uniformly from ``[0, upper_bound)``.
    """

    model = "cas-register"
    templates = (
        statements.CAS_READ,
        statements.CAS_UPDATE_IF_EXISTS,
        statements.CAS_INSERT_IF_ABSENT,
        statements.CAS_COMPARE_AND_SET,
    )

    def __init__(
        self,
        worker_index: int,
        op_count: int,
        register_set: Sequence[int],
        upper_bound: int,
        rng: Optional[np.random.RandomState] = None,
    ):
        super().__init__(worker_index, op_count, register_set, rng)
        if upper_bound <= 0:
            raise ValueError(f"upper_bound must be positive, got {upper_bound}")
        self.upper_bound = upper_bound

    def _value(self) -> int:
        return int(self._rng.randint(self.upper_bound))

    def next_operation(self, n: int) -> Operation:
        f = self._choose(("cas", "write", "read"))
        if f == "cas":
            value: Any = (self._value(), self._value())
        elif f == "write":
            value = self._value()
        else:
            value = None
        return Operation(OutcomeType.INVOKE, f, value, register=self._register())

    def perform(self, op: Operation) -> Operation:
        if op.f == "read":
            return self._read(op)
        if op.f == "write":
            return self._write(op)
        if op.f == "cas":
            return self._cas(op)
        raise ValueError(f"Unknown cas-register operation: {op.f!r}")

    def _read(self, op: Operation) -> Operation:
        rows = self._execute(statements.CAS_READ, [op.register])
        return op.ok(_contents(rows))

    def _write(self, op: Operation) -> Operation:
        """Update if present, otherwise insert if still absent.

        The two phases are separate transactions. The insert is itself
        guarded by absence, so a row created between the phases turns
        this write into a fail rather than a blind overwrite.
        """
        rows = self._execute(
            statements.CAS_UPDATE_IF_EXISTS, [op.register, op.value, op.register])
        if _contents(rows) is not None:
            return op.ok()

        rows = self._execute(
            statements.CAS_INSERT_IF_ABSENT, [op.register, op.register, op.value])
        if _contents(rows) is None:
            return op.ok()
        return op.fail()

    def _cas(self, op: Operation) -> Operation:
        expected, new = op.value
        rows = self._execute(
            statements.CAS_COMPARE_AND_SET, [op.register, expected, new, op.register])
        # Absent rows read as None, which never equals an integer
        if _contents(rows) == expected:
            return op.ok()
        return op.fail()


# ---------------------------------------------------------------------------
# rw-register
# ---------------------------------------------------------------------------

class RWRegisterWorkload(Workload):
    """Read/write registers in transactions of one or two micro-ops.

    Written values are ``threshold + v`` where
    ``threshold = max_ops_per_txn * worker_index * op_count`` reserves a
    band per worker and ``v`` is this worker's counter, starting at 1.
    """

    model = "rw-register"
    templates = (
        statements.RW_READ,
        statements.RW_WRITE,
        statements.RW_READ_READ,
        statements.RW_READ_WRITE,
        statements.RW_WRITE_WRITE,
    )

    SHAPES = ("read", "write", "read-read", "read-write", "write-write")

    def __init__(
        self,
        worker_index: int,
        op_count: int,
        register_set: Sequence[int],
        max_ops_per_txn: int = MAX_OPS_PER_TXN,
        rng: Optional[np.random.RandomState] = None,
    ):
        super().__init__(worker_index, op_count, register_set, rng)
        self.threshold = max_ops_per_txn * worker_index * op_count
        self._v = 1

    def _take_value(self) -> int:
        value = self.threshold + self._v
        self._v += 1
        return value

    def next_operation(self, n: int) -> Operation:
        shape = self._choose(self.SHAPES)
        if shape == "read":
            value = (MicroOp(READ, self._register()),)
        elif shape == "write":
            value = (MicroOp(WRITE, self._register(), self._take_value()),)
        elif shape == "read-read":
            value = (MicroOp(READ, self._register()), MicroOp(READ, self._register()))
        elif shape == "read-write":
            r = self._register()
            value = (MicroOp(READ, r), MicroOp(WRITE, self._register(), self._take_value()))
        else:
            value = self._write_write_values()
        return Operation(OutcomeType.INVOKE, "txn", value, tid=self.worker_index, step=n)

    def _write_write_values(self) -> Tuple[MicroOp, MicroOp]:
        first = self._take_value()
        self._v += 1
        second = self._take_value()
        return (
            MicroOp(WRITE, self._register(), first),
            MicroOp(WRITE, self._register(), second),
        )

    def perform(self, op: Operation) -> Operation:
        kinds = tuple(m.kind for m in op.value)
        if kinds == (READ,):
            return self._read(op)
        if kinds == (WRITE,):
            return self._write(op)
        if kinds == (READ, READ):
            return self._read_read(op)
        if kinds == (READ, WRITE):
            return self._read_write(op)
        if kinds == (WRITE, WRITE):
            return self._write_write_txn(op)
        raise ValueError(f"Unsupported rw-register transaction: {kinds}")

    def _read(self, op: Operation) -> Operation:
        (r,) = op.value
        rows = self._execute(statements.RW_READ, [r.register])
        return op.ok((r._replace(value=_contents(rows)),))

    def _write(self, op: Operation) -> Operation:
        (w,) = op.value
        rows = self._execute(statements.RW_WRITE, [w.register, w.value])
        if _contents(rows) is None:
            return op.ok()
        return op.fail()

    def _read_read(self, op: Operation) -> Operation:
        r1, r2 = op.value
        rows = self._execute(statements.RW_READ_READ, [r1.register, r2.register])
        return op.ok((
            r1._replace(value=_contents(rows, CONTENTS_1)),
            r2._replace(value=_contents(rows, CONTENTS_2)),
        ))

    def _read_write(self, op: Operation) -> Operation:
        r, w = op.value
        rows = self._execute(statements.RW_READ_WRITE, [r.register, w.register, w.value])
        return op.ok((r._replace(value=_contents(rows)), w))

    def _write_write_txn(self, op: Operation) -> Operation:
        w1, w2 = op.value
        rows = self._execute(
            statements.RW_WRITE_WRITE, [w1.register, w1.value, w2.register, w2.value])
        if _contents(rows) is None:
            return op.ok()
        return op.fail()


# ---------------------------------------------------------------------------
# list-append
# ---------------------------------------------------------------------------

class ListAppendWorkload(Workload):
    """Single-op transactions reading or appending to integer lists.

    The append value ``worker_index * op_count + n`` is unique across
    workers. An append only applies while the target row is absent, so
    each register accepts at most one successful append per run; every
    later append to it fails.
    """

    model = "list-append"
    templates = (statements.LA_READ, statements.LA_APPEND)

    def next_operation(self, n: int) -> Operation:
        f = self._choose(("read", "append"))
        register = self._register()
        if f == "read":
            value = (MicroOp(READ, register),)
        else:
            element = self.worker_index * self.op_count + n
            value = (MicroOp(APPEND, register, element),)
        return Operation(OutcomeType.INVOKE, "txn", value, tid=self.worker_index, n=n)

    def perform(self, op: Operation) -> Operation:
        (micro,) = op.value
        if micro.kind == READ:
            rows = self._execute(statements.LA_READ, [micro.register])
            contents = _contents(rows)
            return op.ok((micro._replace(value=list(contents) if contents else []),))
        if micro.kind == APPEND:
            rows = self._execute(
                statements.LA_APPEND, [micro.register, micro.value, micro.register])
            if not _contents(rows):
                return op.ok()
            return op.fail()
        raise ValueError(f"Unsupported list-append operation: {micro.kind!r}")
