# scheduler.py
from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Callable, Dict, List, Optional

from . import settings
from .dag import StageGraph, build_graph
from .model import SKIP_CANCELLED, SKIP_UPSTREAM, RunReport, RunResult, RunStatus, Stage
from .registry import StageRegistry
from .ui.console import get_console

# (stage, cancel event) -> terminal RunResult
StageFn = Callable[[Stage, threading.Event], RunResult]


class SchedulerState(str, Enum):
    INITIALIZING = "initializing"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    COMPLETED = "completed"


class Scheduler:
    """
    Runs every stage of a registry, respecting `needs`.

    - a stage is ready once all of its needs have Succeeded
    - ready stages run concurrently, at most `max_workers` at a time
    - a Failed/Skipped stage turns every (transitive) dependent into
      Skipped(upstream-failure) without running it
    - unrelated branches keep running after a failure; the run drains
    """

    def __init__(
        self,
        registry: StageRegistry,
        run_stage: StageFn,
        *,
        max_workers: int | None = None,
        poll_interval: float = 0.2,
    ):
        self.registry = registry
        self.run_stage = run_stage
        self.max_workers = max(1, max_workers or settings.default_workers())
        self.poll_interval = poll_interval
        self.state = SchedulerState.INITIALIZING
        self.results: Dict[str, RunResult] = {}
        self._cancel = threading.Event()
        self._graph: Optional[StageGraph] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop dispatching; running stages stop at their next step boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def build(self) -> StageGraph:
        """Freeze the registry and validate the graph (raises ConfigurationError)."""
        self.registry.freeze()
        self._graph = build_graph(self.registry.all())
        self.results = {name: RunResult.pending() for name in self.registry.names()}
        return self._graph

    def run(self) -> RunReport:
        graph = self._graph or self.build()
        console = get_console()

        # remaining unsatisfied needs per stage
        remaining: Dict[str, int] = dict(graph.indeg)
        ready: List[str] = [name for name in graph.order if remaining[name] == 0]
        in_flight: Dict[Future, str] = {}

        self.state = SchedulerState.DISPATCHING
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stage") as pool:
            while ready or in_flight:
                if self._cancel.is_set():
                    self._skip_pending(SKIP_CANCELLED)
                    ready.clear()

                # dispatch while there is a free slot
                while ready and len(in_flight) < self.max_workers:
                    name = ready.pop(0)
                    if self.results[name].status is not RunStatus.PENDING:
                        continue
                    self.results[name] = RunResult.running()
                    console.print_stage_start(name)
                    fut = pool.submit(self._guarded, self.registry.get(name))
                    in_flight[fut] = name

                if not ready and not self._any_pending():
                    self.state = SchedulerState.DRAINING

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready stages
                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    result = fut.result()
                    self._finish(name, result)
                    console.print_stage_finished(name, result)

                    if result.status is RunStatus.SUCCEEDED:
                        for nxt in sorted(graph.dependents(name)):
                            remaining[nxt] -= 1
                            if remaining[nxt] == 0 and self.results[nxt].status is RunStatus.PENDING:
                                ready.append(nxt)
                    else:
                        self._propagate_skip(name, graph)

        # anything still pending was unreachable after a cancel
        self._skip_pending(SKIP_CANCELLED)
        self.state = SchedulerState.COMPLETED
        return RunReport(results=dict(self.results), cancelled=self._cancel.is_set())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guarded(self, stage: Stage) -> RunResult:
        # a stage runner must never take the scheduler down
        try:
            result = self.run_stage(stage, self._cancel)
        except Exception as e:
            return RunResult.failed(f"{type(e).__name__}: {e}")
        if not isinstance(result, RunResult) or not result.terminal:
            return RunResult.failed(f"stage runner returned a non-terminal result: {result!r}")
        return result

    def _finish(self, name: str, result: RunResult) -> None:
        # terminal exactly once
        if self.results[name].terminal:
            return
        self.results[name] = result

    def _root_cause(self, name: str) -> str:
        result = self.results[name]
        if result.status is RunStatus.SKIPPED and result.upstream:
            return result.upstream
        return name

    def _propagate_skip(self, name: str, graph: StageGraph) -> None:
        root = self._root_cause(name)
        reason = SKIP_CANCELLED if self.results[name].reason == SKIP_CANCELLED else SKIP_UPSTREAM
        stack = list(graph.dependents(name))
        while stack:
            nxt = stack.pop()
            if self.results[nxt].status is not RunStatus.PENDING:
                continue
            self.results[nxt] = RunResult.skipped(reason, upstream=root)
            get_console().print_stage_finished(nxt, self.results[nxt])
            stack.extend(graph.dependents(nxt))

    def _any_pending(self) -> bool:
        return any(r.status is RunStatus.PENDING for r in self.results.values())

    def _skip_pending(self, reason: str) -> None:
        for name, result in self.results.items():
            if result.status is RunStatus.PENDING:
                self.results[name] = RunResult.skipped(reason)
