import threading
import time

import pytest

from stageci.dsl import sh, stage
from stageci.errors import ConfigurationError
from stageci.model import SKIP_CANCELLED, SKIP_UPSTREAM, RunResult, RunStatus
from stageci.registry import StageRegistry
from stageci.scheduler import Scheduler, SchedulerState

CHECKS = ["fmt", "spellcheck", "audit", "deny"]


def _stage(name, needs=None):
    return stage(name, sh("noop", "true"), needs=needs)


def _pipeline():
    return [
        _stage("setup"),
        *[_stage(n, needs="setup") for n in CHECKS],
        _stage("clippy", needs=CHECKS),
        _stage("tests", needs="clippy"),
    ]


class Recorder:
    def __init__(self, fail=(), raise_in=()):
        self.fail = set(fail)
        self.raise_in = set(raise_in)
        self.ran = []
        self._lock = threading.Lock()

    def __call__(self, stage, cancel):
        with self._lock:
            self.ran.append(stage.name)
        if stage.name in self.raise_in:
            raise RuntimeError("runner blew up")
        if stage.name in self.fail:
            return RunResult.failed("step failed", step_index=1, exit_code=1)
        return RunResult.succeeded()


def _run(stages, fn, **kw):
    sched = Scheduler(StageRegistry(stages), fn, poll_interval=0.01, **kw)
    return sched, sched.run()


def test_all_stages_succeed():
    fn = Recorder()
    sched, report = _run(_pipeline(), fn, max_workers=4)
    assert report.succeeded
    assert report.exit_code == 0
    assert sorted(fn.ran) == sorted(s.name for s in _pipeline())
    assert fn.ran[0] == "setup"
    assert fn.ran[-1] == "tests"
    assert sched.state is SchedulerState.COMPLETED


def test_audit_failure_skips_clippy_and_tests():
    fn = Recorder(fail={"audit"})
    _, report = _run(_pipeline(), fn, max_workers=4)

    assert report["setup"].status is RunStatus.SUCCEEDED
    for name in ("fmt", "spellcheck", "deny"):
        assert report[name].status is RunStatus.SUCCEEDED
    assert report["audit"].status is RunStatus.FAILED
    for name in ("clippy", "tests"):
        assert report[name].status is RunStatus.SKIPPED
        assert report[name].reason == SKIP_UPSTREAM
        assert report[name].upstream == "audit"
    assert report.status is RunStatus.FAILED
    assert report.failures() == ["audit"]
    assert "clippy" not in fn.ran
    assert "tests" not in fn.ran


def test_unrelated_branch_drains_after_failure():
    stages = [_stage("a"), _stage("b", needs="a"), _stage("c"), _stage("d", needs="c")]
    fn = Recorder(fail={"a"})
    _, report = _run(stages, fn, max_workers=2)
    assert report["b"].status is RunStatus.SKIPPED
    assert report["c"].status is RunStatus.SUCCEEDED
    assert report["d"].status is RunStatus.SUCCEEDED


def test_every_stage_gets_exactly_one_terminal_result():
    fn = Recorder(fail={"spellcheck"})
    _, report = _run(_pipeline(), fn, max_workers=3)
    assert set(report.results) == {s.name for s in _pipeline()}
    assert all(r.terminal for r in report.results.values())
    assert len(fn.ran) == len(set(fn.ran))


def test_independent_stages_run_concurrently():
    barrier = threading.Barrier(4, timeout=5)

    def fn(stage, cancel):
        if stage.name in CHECKS:
            # only passes if all four checks are running at the same time
            barrier.wait()
        return RunResult.succeeded()

    _, report = _run(_pipeline(), fn, max_workers=4)
    assert report.succeeded


def test_concurrency_is_bounded():
    running = 0
    peak = 0
    lock = threading.Lock()

    def fn(stage, cancel):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1
        return RunResult.succeeded()

    stages = [_stage(f"s{i}") for i in range(6)]
    _, report = _run(stages, fn, max_workers=2)
    assert report.succeeded
    assert peak <= 2


def test_runner_exception_becomes_failure():
    fn = Recorder(raise_in={"fmt"})
    _, report = _run(_pipeline(), fn, max_workers=2)
    assert report["fmt"].status is RunStatus.FAILED
    assert "runner blew up" in report["fmt"].reason
    assert report["clippy"].upstream == "fmt"


def test_non_terminal_result_becomes_failure():
    _, report = _run([_stage("a")], lambda s, c: RunResult.running(), max_workers=1)
    assert report["a"].status is RunStatus.FAILED


def test_cycle_fails_before_anything_runs():
    fn = Recorder()
    sched = Scheduler(StageRegistry([_stage("a", needs="b"), _stage("b", needs="a")]), fn)
    with pytest.raises(ConfigurationError):
        sched.build()
    assert fn.ran == []


def test_cancel_skips_pending_and_keeps_finished():
    started = threading.Event()
    sched = None

    def fn(stage, cancel):
        if stage.name == "setup":
            return RunResult.succeeded()
        started.set()
        sched.cancel()
        assert cancel.is_set()
        return RunResult.skipped(SKIP_CANCELLED)

    stages = [_stage("setup"), _stage("fmt", needs="setup"), _stage("clippy", needs="fmt")]
    sched = Scheduler(StageRegistry(stages), fn, max_workers=1, poll_interval=0.01)
    report = sched.run()

    assert started.is_set()
    assert report.cancelled
    assert report["setup"].status is RunStatus.SUCCEEDED
    assert report["fmt"].status is RunStatus.SKIPPED
    assert report["clippy"].status is RunStatus.SKIPPED
    assert report["clippy"].reason == SKIP_CANCELLED


def test_registry_is_frozen_once_built():
    reg = StageRegistry([_stage("a")])
    Scheduler(reg, Recorder()).build()
    assert reg.frozen
