"""Worker loops and the run coordinator.

Each worker owns one store session, one workload (RNG and value counter)
and one process id slot. Workers share exactly three things: the
ProcessTracker, the HistoryRecorder, and the Clock offset inside it.

A worker is strictly sequential: invoke, execute, classify, complete,
then the next operation. Any failure while performing an operation is
recorded and the loop continues. A failure outside an operation (no
session, a failing prepare) aborts the whole process: a harness that keeps
going after losing its connection would emit a history that silently
misses operations.

Key types:
- RunStatistics: Thread-safe outcome counters
- Worker: One sequential operation loop
- build_workload(): Workload for a model and worker index
- run(): Start the workers, wait for all of them
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, Optional

import numpy as np

from accordload.config import RunConfig
from accordload.executor import TransactionExecutor, connect
from accordload.history import HistoryRecorder, Operation
from accordload.outcome import FailureCategory, OutcomeType, StoreFailure, classify
from accordload.process import ProcessTracker
from accordload.workload import (
    CASRegisterWorkload,
    ListAppendWorkload,
    RWRegisterWorkload,
    Workload,
)

logger = logging.getLogger(__name__)

Connector = Callable[[RunConfig], TransactionExecutor]
AbortHook = Callable[[int, BaseException], None]


def connect_cluster(config: RunConfig) -> TransactionExecutor:
    """Default connector: a cassandra-driver session per worker."""
    return connect(config.hosts, config.keyspace, config.read_timeout_ms)


def abort_process(worker_index: int, exc: BaseException) -> None:
    """Terminate the whole process with a non-zero status.

    os._exit is used because sys.exit in a worker thread only ends that
    thread.
    """
    logger.critical(f"Worker {worker_index} failed outside operation handling: {exc!r}")
    logging.shutdown()
    os._exit(1)


# ---------------------------------------------------------------------------
# RunStatistics
# ---------------------------------------------------------------------------

class RunStatistics:
    """Completed-operation counters, by outcome type."""

    def __init__(self, progress: Optional[Callable[[int], None]] = None):
        self._lock = threading.Lock()
        self._progress = progress
        self.counts: Dict[OutcomeType, int] = {
            t: 0 for t in OutcomeType if t is not OutcomeType.INVOKE
        }

    def record(self, completion: Operation) -> None:
        with self._lock:
            self.counts[completion.type] += 1
            if self._progress is not None:
                self._progress(1)

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self.counts.values())

    def summary(self) -> str:
        with self._lock:
            return ", ".join(f"{t.value}={c}" for t, c in self.counts.items())


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------

def build_workload(config: RunConfig, worker_index: int) -> Workload:
    """Build the configured model's workload for one worker."""
    rng = np.random.RandomState(config.worker_seed(worker_index))
    count = config.per_worker_count

    if config.model == "cas-register":
        return CASRegisterWorkload(
            worker_index, count, config.register_set, config.upper_bound, rng=rng)
    elif config.model == "rw-register":
        return RWRegisterWorkload(
            worker_index, count, config.register_set, config.max_ops_per_txn, rng=rng)
    elif config.model == "list-append":
        return ListAppendWorkload(worker_index, count, config.register_set, rng=rng)
    else:
        raise ValueError(f"Unknown model: {config.model}")


class Worker:
    """Sequential operation loop for one worker index."""

    def __init__(
        self,
        index: int,
        config: RunConfig,
        workload: Workload,
        tracker: ProcessTracker,
        recorder: HistoryRecorder,
        stats: Optional[RunStatistics] = None,
        connector: Connector = connect_cluster,
        on_abort: AbortHook = abort_process,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.index = index
        self._config = config
        self._workload = workload
        self._tracker = tracker
        self._recorder = recorder
        self._stats = stats
        self._connector = connector
        self._on_abort = on_abort
        self._sleep = sleep

    def run(self) -> int:
        """Perform this worker's share of operations.

        Returns:
            Number of operations completed.
        """
        try:
            return self._run()
        except Exception as e:
            self._recorder.flush()
            self._on_abort(self.index, e)
            raise

    def _run(self) -> int:
        count = self._config.per_worker_count
        executor = self._connector(self._config)
        try:
            self._workload.prepare(executor)
            logger.info(f"Worker {self.index} started ({self._config.model}, {count} operations)")

            process = self._tracker.next_id()
            for n in range(1, count + 1):
                invoke = self._workload.next_operation(n).with_process(process)
                self._recorder.record(invoke)
                completion = self._recorder.record(self._complete(invoke))
                if self._stats is not None:
                    self._stats.record(completion)
                process = self._tracker.retain_or_advance(process, completion.type)
        finally:
            executor.shutdown()

        logger.info(f"Worker {self.index} finished")
        return count

    def _complete(self, invoke: Operation) -> Operation:
        """Perform the operation, classifying any failure.

        Failures other than StoreFailure (e.g. unexpected result rows) are
        recorded as unhandled exceptions; the loop goes on.
        """
        try:
            return self._workload.perform(invoke)
        except StoreFailure as failure:
            return self._resolve(invoke, failure)
        except Exception as e:
            logger.warning(f"Worker {self.index} process {invoke.process} {invoke.f}: "
                           f"unhandled exception {e!r}")
            return self._resolve(invoke, StoreFailure(FailureCategory.UNEXPECTED, repr(e)))

    def _resolve(self, invoke: Operation, failure: StoreFailure) -> Operation:
        outcome = classify(failure, self._config.nohost_backoff_s)
        logger.debug(f"Worker {self.index} process {invoke.process} {invoke.f}: "
                     f"{failure} -> {outcome.type.value}")
        if outcome.backoff_s > 0:
            self._sleep(outcome.backoff_s)
        return invoke.resolve(outcome)


# ---------------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------------

def run(
    config: RunConfig,
    recorder: HistoryRecorder,
    *,
    connector: Connector = connect_cluster,
    on_abort: AbortHook = abort_process,
    sleep: Callable[[float], None] = time.sleep,
    progress: Optional[Callable[[int], None]] = None,
) -> RunStatistics:
    """Run ``config.thread_count`` workers to completion.

    Returns once every worker has returned. A worker exception that the
    abort hook lets through is re-raised here.
    """
    tracker = ProcessTracker()
    stats = RunStatistics(progress=progress)
    workers = [
        Worker(
            index,
            config,
            build_workload(config, index),
            tracker,
            recorder,
            stats=stats,
            connector=connector,
            on_abort=on_abort,
            sleep=sleep,
        )
        for index in range(config.thread_count)
    ]

    logger.info(f"Starting {len(workers)} workers against {','.join(config.hosts)}")
    with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="worker") as pool:
        futures = [pool.submit(worker.run) for worker in workers]
        wait(futures)

    for future in futures:
        future.result()

    recorder.flush()
    logger.info(f"Run complete: {stats.summary()} ({tracker.issued} processes)")
    return stats
