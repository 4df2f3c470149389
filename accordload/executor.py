"""Transaction executor adapter.

The workloads see the store only through TransactionExecutor: prepare a
Statement once, execute it with positional parameters, get rows back as
dicts. Every driver exception is converted into a StoreFailure carrying a
FailureCategory; interpreting that category is outcome.classify()'s job.

No retries happen here. The driver is configured with a fall-through retry
policy so a timeout reaches the caller as a timeout, not as a silently
retried success.

Key types:
- TransactionExecutor: ABC with prepare/execute/shutdown
- CassandraExecutor: cassandra-driver implementation
- connect(): Open a session against a cluster
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Sequence

from cassandra import OperationTimedOut, ReadTimeout, Unavailable, WriteTimeout
from cassandra.cluster import (
    EXEC_PROFILE_DEFAULT,
    Cluster,
    ExecutionProfile,
    NoHostAvailable,
)
from cassandra.policies import FallthroughRetryPolicy
from cassandra.query import dict_factory

from accordload.outcome import FailureCategory, StoreFailure
from accordload.statements import KEYSPACE, Statement

logger = logging.getLogger(__name__)


# Checked in order; first match wins
_DRIVER_FAILURES = (
    (Unavailable, FailureCategory.UNAVAILABLE),
    (ReadTimeout, FailureCategory.READ_TIMEOUT),
    (WriteTimeout, FailureCategory.WRITE_TIMEOUT),
    (OperationTimedOut, FailureCategory.OPERATION_TIMEOUT),
    (NoHostAvailable, FailureCategory.NO_HOST_AVAILABLE),
)


def failure_from_exception(exc: BaseException) -> StoreFailure:
    """Convert a driver exception into a typed StoreFailure."""
    for exc_type, category in _DRIVER_FAILURES:
        if isinstance(exc, exc_type):
            return StoreFailure(category, str(exc))
    return StoreFailure(FailureCategory.UNEXPECTED, repr(exc))


class TransactionExecutor(ABC):
    """Narrow execute-and-get-rows interface to the store."""

    @abstractmethod
    def prepare(self, statement: Statement) -> Any:
        """Compile a statement template, returning an opaque handle."""
        ...

    @abstractmethod
    def execute(self, handle: Any, params: Sequence[Any]) -> list[dict]:
        """Run a prepared statement.

        Returns:
            Result rows keyed by selected column name.

        Raises:
            StoreFailure: for any failure, with its category.
        """
        ...

    @abstractmethod
    def shutdown(self) -> None:
        """Release the session and any connections."""
        ...


class CassandraExecutor(TransactionExecutor):
    """Executor backed by a cassandra-driver session."""

    def __init__(self, cluster: Cluster, session):
        self._cluster = cluster
        self._session = session

    def prepare(self, statement: Statement):
        logger.debug(f"Preparing {statement.name}")
        return self._session.prepare(statement.cql)

    def execute(self, handle, params: Sequence[Any]) -> list[dict]:
        try:
            return list(self._session.execute(handle, list(params)))
        except Exception as e:
            raise failure_from_exception(e) from e

    def shutdown(self) -> None:
        self._session.shutdown()
        self._cluster.shutdown()


def connect(
    hosts: Sequence[str],
    keyspace: str = KEYSPACE,
    read_timeout_ms: int = 12000,
) -> CassandraExecutor:
    """Open a session against the cluster and switch to ``keyspace``.

    Connection errors propagate unchanged; a worker that cannot connect
    is not allowed to produce history.
    """
    profile = ExecutionProfile(
        retry_policy=FallthroughRetryPolicy(),
        request_timeout=read_timeout_ms / 1000.0,
        row_factory=dict_factory,
    )
    cluster = Cluster(
        contact_points=list(hosts),
        execution_profiles={EXEC_PROFILE_DEFAULT: profile},
    )
    session = cluster.connect(keyspace)
    logger.info(f"Connected to {','.join(hosts)} (keyspace={keyspace})")
    return CassandraExecutor(cluster, session)
