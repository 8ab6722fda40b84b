"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from typing import Mapping, Optional

from ..model import RunReport, RunResult, RunStatus


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # stages report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        project: str,
        workflow: str,
        stage_count: int,
        workers: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Project: {project}",
            f"Workflow: {workflow}",
            f"Stages: {stage_count}",
            f"Workers: {workers}",
            "",
        )

    def print_plan(self, levels: list[list[str]], needs: Mapping[str, tuple]) -> None:
        """Print the stage graph level by level."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"=== Level {idx} ===")
            for name in level:
                deps = needs.get(name) or ()
                suffix = f" (needs: {', '.join(deps)})" if deps else ""
                self._out(f"  {name}{suffix}")

    def print_stage_start(self, name: str) -> None:
        """Print stage start message."""
        self._out(f"STAGE STARTED: {name}")

    def print_step(self, stage: str, index: int, name: str) -> None:
        """Print step start message."""
        self._out(f"[{stage}] STEP {index}: {name}")

    def print_provision(self, stage: str, options: list[str]) -> None:
        what = ", ".join(options) if options else "base environment"
        self._out(f"[{stage}] SETUP: {what}")

    def print_stage_finished(self, name: str, result: RunResult) -> None:
        """Print a stage's terminal result as soon as it is known."""
        if result.status is RunStatus.FAILED:
            self.print_failure(name, result)
        else:
            self._out(f"STAGE {name}: {result.describe()}")

    def print_failure(self, name: str, result: RunResult) -> None:
        """
        Print failure message.

        Args:
            name: Stage name
            result: Failed run result (reason, step, exit code, hint, output)
        """
        lines = [f"STAGE FAILED: {name}"]
        if result.step_index is not None:
            lines.append(f"Step: {result.step_index}")
        if result.exit_code is not None:
            lines.append(f"Exit code: {result.exit_code}")
        if result.reason:
            lines.append(f"Reason: {result.reason}")
        if result.hint:
            lines.append(f"Hint: {result.hint}")
        if result.output:
            if self.debug:
                lines.append(result.output.rstrip())
            else:
                # Show last lines of output for non-debug mode
                tail = result.output.rstrip().splitlines()[-20:]
                lines.extend(tail)
        self._out(*lines, err=True)

    def print_cache_hit(self, stage: str, key: str) -> None:
        """Print cache hit message."""
        self._out(f"[{stage}] CACHE: hit ({key})")

    def print_cache_miss(self, stage: str, key: str) -> None:
        """Print cache miss message."""
        self._out(f"[{stage}] CACHE: miss ({key})")

    def print_cache_saved(self, stage: str, key: str) -> None:
        """Print cache save message."""
        self._out(f"[{stage}] CACHE: saved ({key})")

    def print_report(self, report: RunReport) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40, "RESULTS", "=" * 40)
        for stage, result in report.results.items():
            self._out(f"  {stage}: {result.describe().upper()}")
        overall = "CANCELLED" if report.cancelled else report.status.value.upper()
        self._out(f"\nOVERALL: {overall}")
        failures = report.failures()
        if failures:
            self._out(f"Failing stages: {', '.join(failures)}", err=True)

    def print_phase(self, index: int, name: str) -> None:
        self._out(f"\nPGO PHASE {index}: {name}")

    def print_timings(self, label: str, seconds: list[float]) -> None:
        if not seconds:
            return
        shown = ", ".join(f"{s:.4f}s" for s in seconds)
        self._out(f"{label}: {shown}")

    def print_warning(self, message: str) -> None:
        """Print warning message."""
        self._out(f"WARNING: {message}", err=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
