"""Tests for the worker loop and run coordinator.

Tests:
- Every invoke is followed by exactly one completion for that process
- A new process id is used after, and only after, an info completion
- Store failures are classified and the loop continues
- No-host backoff happens before the completion is emitted
- Non-operation failures reach the abort hook and are re-raised
- Statistics and progress counts
"""

import io
import json
from collections import defaultdict

import pytest

from accordload.clock import Clock
from accordload.config import ConfigurationError, RunConfig
from accordload.history import HistoryRecorder
from accordload.outcome import FailureCategory, OutcomeType
from accordload.process import ProcessTracker
from accordload.runner import RunStatistics, Worker, build_workload, run
from accordload.test_utils import InMemoryExecutor, InMemoryStore
from accordload.workload import (
    CASRegisterWorkload,
    ListAppendWorkload,
    RWRegisterWorkload,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_recorder():
    stream = io.StringIO()
    ticks = iter(range(10**9))
    return stream, HistoryRecorder(stream, Clock(source=lambda: next(ticks)))


def events(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def make_config(**kwargs):
    defaults = dict(model="cas-register", thread_count=1, operation_count=20,
                    register_set=(1, 2, 3), seed=7)
    defaults.update(kwargs)
    return RunConfig(**defaults)


class AbortRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, worker_index, exc):
        self.calls.append((worker_index, exc))


def run_in_memory(config, store=None, sleep=None, on_abort=None):
    store = store if store is not None else InMemoryStore()
    stream, recorder = make_recorder()
    stats = run(config, recorder,
                connector=store.connector,
                on_abort=on_abort if on_abort is not None else AbortRecorder(),
                sleep=sleep if sleep is not None else (lambda s: None))
    return stats, events(stream), store


def single_worker(config, store, sleep=lambda s: None, on_abort=None):
    stream, recorder = make_recorder()
    worker = Worker(0, config, build_workload(config, 0), ProcessTracker(), recorder,
                    stats=RunStatistics(), connector=store.connector,
                    on_abort=on_abort if on_abort is not None else AbortRecorder(),
                    sleep=sleep)
    return worker, stream, recorder


# ---------------------------------------------------------------------------
# build_workload
# ---------------------------------------------------------------------------

class TestBuildWorkload:
    @pytest.mark.parametrize("model,cls", [
        ("cas-register", CASRegisterWorkload),
        ("rw-register", RWRegisterWorkload),
        ("list-append", ListAppendWorkload),
    ])
    def test_model(self, model, cls):
        workload = build_workload(make_config(model=model), 0)
        assert isinstance(workload, cls)

    def test_per_worker_count(self):
        config = make_config(model="rw-register", thread_count=4, operation_count=100)
        workload = build_workload(config, 2)
        assert workload.op_count == 25
        assert workload.threshold == 5 * 2 * 25

    def test_unknown_model_rejected(self):
        with pytest.raises(ConfigurationError, match="bank"):
            make_config(model="bank")

    def test_seeded_workers_differ(self):
        config = make_config(model="list-append", operation_count=100)
        a = [build_workload(config, 0).next_operation(n).value[0].kind for n in range(1, 50)]
        b = [build_workload(config, 1).next_operation(n).value[0].kind for n in range(1, 50)]
        assert a != b


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class TestWorker:
    def test_invoke_then_completion(self):
        store = InMemoryStore()
        worker, stream, _ = single_worker(make_config(operation_count=10), store)
        assert worker.run() == 10

        history = events(stream)
        assert len(history) == 20
        for invoke, completion in zip(history[::2], history[1::2]):
            assert invoke["type"] == "invoke"
            assert completion["type"] in ("ok", "fail")
            assert completion["process"] == invoke["process"]
            assert completion["f"] == invoke["f"]
            assert completion["time"] > invoke["time"]

    def test_prepares_and_shuts_down(self):
        store = InMemoryStore()
        executors = []

        def connector(config):
            executor = store.connector(config)
            executors.append(executor)
            return executor

        config = make_config(operation_count=3)
        stream, recorder = make_recorder()
        Worker(0, config, build_workload(config, 0), ProcessTracker(), recorder,
               connector=connector, on_abort=AbortRecorder()).run()
        (executor,) = executors
        assert len(executor.prepared) == 4
        assert executor.closed

    def test_read_timeout_retires_process(self):
        """A timed-out read completes as info and the next op gets a new process."""
        store = InMemoryStore()
        store.inject(FailureCategory.READ_TIMEOUT)
        worker, stream, _ = single_worker(make_config(operation_count=3), store)
        worker.run()

        history = events(stream)
        first, second, third = history[1], history[2], history[4]
        assert first["type"] == "info"
        assert first["cause"] == "read-timed-out"
        assert second["process"] == first["process"] + 1
        assert third["process"] == second["process"]

    def test_definite_failures_keep_process(self):
        store = InMemoryStore()
        store.inject(FailureCategory.UNAVAILABLE, count=2)
        store.inject(FailureCategory.UNEXPECTED, details="boom")
        worker, stream, _ = single_worker(make_config(operation_count=5), store)
        assert worker.run() == 5

        history = events(stream)
        completions = history[1::2]
        assert [c["type"] for c in completions[:3]] == ["fail", "fail", "error"]
        assert completions[0]["cause"] == "unavailable"
        assert completions[2]["cause"] == "unhandled-exception"
        assert completions[2]["details"] == "boom"
        assert {e["process"] for e in history} == {1}

    def test_nohost_backoff_before_completion(self):
        store = InMemoryStore()
        store.inject(FailureCategory.NO_HOST_AVAILABLE)
        seen = []
        recorder_box = []

        def sleep(seconds):
            seen.append((seconds, recorder_box[0].count))

        worker, stream, recorder = single_worker(
            make_config(operation_count=2, nohost_backoff_s=1.0), store, sleep=sleep)
        recorder_box.append(recorder)
        worker.run()

        # Slept once, after the invoke and before its completion was written
        assert seen == [(1.0, 1)]
        completion = events(stream)[1]
        assert completion["type"] == "fail"
        assert completion["cause"] == "nohost"

    def test_no_sleep_without_nohost(self):
        store = InMemoryStore()
        store.inject(FailureCategory.WRITE_TIMEOUT)
        seen = []
        worker, _, _ = single_worker(make_config(operation_count=2), store, sleep=seen.append)
        worker.run()
        assert seen == []

    def test_connection_failure_aborts(self):
        store = InMemoryStore()
        store.refuse_connections = ConnectionError("refused")
        abort = AbortRecorder()
        worker, stream, _ = single_worker(make_config(), store, on_abort=abort)

        with pytest.raises(ConnectionError):
            worker.run()
        assert len(abort.calls) == 1
        assert abort.calls[0][0] == 0
        assert isinstance(abort.calls[0][1], ConnectionError)
        assert stream.getvalue() == ""


    def test_unexpected_rows_recorded_as_error(self):
        """A result row missing its column is an error completion, not an ok."""
        store = InMemoryStore()

        class MisnamedColumn(InMemoryExecutor):
            calls = 0

            def execute(self, handle, params):
                rows = super().execute(handle, params)
                MisnamedColumn.calls += 1
                if MisnamedColumn.calls == 1:
                    return [{"contents": None}]
                return rows

        config = make_config(operation_count=3)
        stream, recorder = make_recorder()
        worker = Worker(0, config, build_workload(config, 0), ProcessTracker(), recorder,
                        connector=lambda c: MisnamedColumn(store), on_abort=AbortRecorder())
        assert worker.run() == 3

        history = events(stream)
        assert len(history) == 6
        first = history[1]
        assert first["type"] == "error"
        assert first["cause"] == "unhandled-exception"
        assert "KeyError" in first["details"]
        assert all(e["type"] in ("ok", "fail") for e in history[3::2])
        assert {e["process"] for e in history} == {1}

    def test_session_released_when_prepare_fails(self):
        store = InMemoryStore()
        executors = []

        class FailingPrepare(InMemoryExecutor):
            def prepare(self, statement):
                raise RuntimeError("prepare failed")

        def connector(config):
            executor = FailingPrepare(store)
            executors.append(executor)
            return executor

        config = make_config()
        stream, recorder = make_recorder()
        abort = AbortRecorder()
        worker = Worker(0, config, build_workload(config, 0), ProcessTracker(), recorder,
                        connector=connector, on_abort=abort)

        with pytest.raises(RuntimeError):
            worker.run()
        assert len(abort.calls) == 1
        assert executors[0].closed
        assert stream.getvalue() == ""


# ---------------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------------

class TestRun:
    @pytest.mark.parametrize("model", ["cas-register", "rw-register", "list-append"])
    def test_every_invoke_completes(self, model):
        config = make_config(model=model, thread_count=4, operation_count=200)
        stats, history, _ = run_in_memory(config)

        assert stats.total == 200
        assert len(history) == 400

        open_ops = {}
        for event in history:
            process = event["process"]
            if event["type"] == "invoke":
                assert process not in open_ops
                open_ops[process] = event
            else:
                invoke = open_ops.pop(process)
                assert event["f"] == invoke["f"]
        assert open_ops == {}

    def test_time_nondecreasing(self):
        stats, history, _ = run_in_memory(make_config(thread_count=3, operation_count=60))
        times = [e["time"] for e in history]
        assert times == sorted(times)

    def test_process_changes_only_after_info(self):
        store = InMemoryStore()
        store.inject(FailureCategory.READ_TIMEOUT, count=3)
        store.inject(FailureCategory.OPERATION_TIMEOUT, count=2)
        store.inject(FailureCategory.UNAVAILABLE, count=2)
        config = make_config(model="rw-register", thread_count=3, operation_count=90)
        stats, history, _ = run_in_memory(config, store=store)

        by_tid = defaultdict(list)
        for event in history:
            if event["type"] != "invoke":
                by_tid[event["tid"]].append(event)

        retired = set()
        for completions in by_tid.values():
            for previous, current in zip(completions, completions[1:]):
                if previous["type"] == "info":
                    assert current["process"] != previous["process"]
                    retired.add(previous["process"])
                else:
                    assert current["process"] == previous["process"]

        assert stats.counts[OutcomeType.INFO] == 5
        assert len(retired) == 5 - sum(c[-1]["type"] == "info" for c in by_tid.values())

    def test_processes_never_shared_between_workers(self):
        store = InMemoryStore()
        store.inject(FailureCategory.WRITE_TIMEOUT, count=6)
        config = make_config(model="list-append", thread_count=4, operation_count=80)
        _, history, _ = run_in_memory(config, store=store)

        owner = {}
        for event in history:
            assert owner.setdefault(event["process"], event["tid"]) == event["tid"]

    def test_one_session_per_worker(self):
        _, _, store = run_in_memory(make_config(thread_count=5, operation_count=50))
        assert store.connections == 5

    def test_remainder_dropped(self):
        stats, history, _ = run_in_memory(make_config(thread_count=3, operation_count=10))
        assert stats.total == 9
        assert len(history) == 18

    def test_progress_callback(self):
        ticks = []
        stream, recorder = make_recorder()
        run(make_config(thread_count=2, operation_count=10), recorder,
            connector=InMemoryStore().connector, on_abort=AbortRecorder(),
            progress=ticks.append)
        assert sum(ticks) == 10

    def test_worker_failure_is_raised(self):
        store = InMemoryStore()
        store.refuse_connections = ConnectionError("refused")
        abort = AbortRecorder()
        with pytest.raises(ConnectionError):
            run_in_memory(make_config(thread_count=2, operation_count=4),
                          store=store, on_abort=abort)
        assert sorted(i for i, _ in abort.calls) == [0, 1]


class TestRunStatistics:
    def test_counts(self):
        from accordload.history import Operation

        stats = RunStatistics()
        op = Operation(OutcomeType.INVOKE, "read", None, process=1)
        stats.record(op.ok())
        stats.record(op.fail())
        stats.record(op.fail())
        assert stats.counts[OutcomeType.OK] == 1
        assert stats.counts[OutcomeType.FAIL] == 2
        assert stats.total == 3
        assert "fail=2" in stats.summary()
        assert OutcomeType.INVOKE not in stats.counts
