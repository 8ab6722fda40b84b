# executor.py
from __future__ import annotations

import os
import re
import threading
import time
from pathlib import Path
from typing import Dict, Mapping, Optional

from . import settings
from .errors import ProvisioningError, StepFailure
from .model import SKIP_CANCELLED, RunResult, Stage, Step
from .provision import EnvironmentHandle, EnvironmentProvisioner
from .shell import CommandRunner, run_command
from .ui.console import get_console

TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "cargo-spellcheck": "Install cargo-spellcheck (cargo install cargo-spellcheck).",
    "cargo-audit": "Install cargo-audit (cargo install cargo-audit).",
    "cargo-deny": "Install cargo-deny (cargo install cargo-deny).",
    "cargo-nextest": "Install cargo-nextest (cargo install cargo-nextest).",
    "cargo-llvm-cov": "Install cargo-llvm-cov (cargo install cargo-llvm-cov).",
    "cargo-pgo": "Install cargo-pgo (cargo install cargo-pgo).",
    "llvm-profdata": "Install llvm-tools (rustup component add llvm-tools-preview).",
    "llvm-bolt": "Install BOLT (llvm-bolt) from your LLVM distribution.",
    "merge-fdata": "Install BOLT (merge-fdata ships with llvm-bolt).",
    "perf": "Install linux perf tools.",
    "mold": "Install the mold linker.",
}


_NOT_FOUND_RE = re.compile(r"([\w.+-]+): (?:command )?not found")

_VAR_RE = re.compile(r"\$(\w+)|\$\{(\w+)(?::-([^}]*))?\}")


def expand_vars(value: str, env: Mapping[str, str]) -> str:
    """Expand $VAR, ${VAR} and ${VAR:-default} against `env`. Unset names expand to ""."""

    def sub(m: re.Match) -> str:
        name = m.group(1) or m.group(2)
        current = env.get(name, "")
        if not current and m.group(3) is not None:
            return m.group(3)
        return current

    return _VAR_RE.sub(sub, value)


def tool_hint(cmd: str, output: str = "") -> Optional[str]:
    m = _NOT_FOUND_RE.search(output)
    if m and m.group(1) in TOOL_HINTS:
        return TOOL_HINTS[m.group(1)]
    words = cmd.split()
    if not words:
        return None
    tool = words[0]
    if tool == "cargo" and len(words) > 1:
        sub = f"cargo-{words[1]}"
        if sub in TOOL_HINTS:
            return TOOL_HINTS[sub]
    return TOOL_HINTS.get(tool)


def _tail(text: str) -> str:
    return text[-settings.OUTPUT_TAIL:]


class StepExecutor:
    """
    Runs a stage's steps in order inside a provisioned environment.

    The first failing step stops the stage. A cancel event is checked at
    every step boundary.
    """

    def __init__(
        self,
        project_root: str | Path,
        provisioner: EnvironmentProvisioner,
        *,
        runner: CommandRunner = run_command,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.provisioner = provisioner
        self.runner = runner
        self.base_env = dict(os.environ if base_env is None else base_env)

    def run(
        self,
        stage: Stage,
        environment: EnvironmentHandle,
        cancel: Optional[threading.Event] = None,
    ) -> RunResult:
        console = get_console()
        started = time.monotonic()
        stage_scoped: Dict[str, str] = {}

        for index, step in enumerate(stage.steps, start=1):
            if cancel is not None and cancel.is_set():
                return RunResult.skipped(SKIP_CANCELLED)

            console.print_step(stage.name, index, step.name)
            try:
                if step.is_setup:
                    environment = self._provision(stage, step, environment)
                else:
                    stage_scoped.update(step.export)
                    self._run_step(stage, index, step, environment, stage_scoped)
            except StepFailure as e:
                return RunResult.failed(
                    str(e),
                    step_index=e.index,
                    exit_code=e.exit_code,
                    output=e.output,
                    hint=e.hint,
                    duration=time.monotonic() - started,
                )
            except ProvisioningError as e:
                return RunResult.failed(
                    str(e),
                    step_index=index,
                    exit_code=e.exit_code,
                    output=e.output,
                    duration=time.monotonic() - started,
                )

        return RunResult.succeeded(duration=time.monotonic() - started)

    def _provision(self, stage: Stage, step: Step, environment: EnvironmentHandle) -> EnvironmentHandle:
        options = environment.options | step.options
        get_console().print_provision(stage.name, options.enabled())
        return self.provisioner.provision(options)

    def step_env(
        self,
        stage: Stage,
        step: Step,
        environment: EnvironmentHandle,
        stage_scoped: Mapping[str, str],
        cwd: Optional[Path] = None,
    ) -> Dict[str, str]:
        """
        base < provisioned < stage < exported < step. Each layer is expanded
        against the layers below it.
        """
        env = dict(self.base_env)
        env.update(environment.apply(env))
        env["PWD"] = str(cwd or self.project_root)
        for layer in (stage.env, stage_scoped, step.env):
            expanded = {k: expand_vars(v, env) for k, v in layer.items()}
            env.update(expanded)
        return env

    def _run_step(
        self,
        stage: Stage,
        index: int,
        step: Step,
        environment: EnvironmentHandle,
        stage_scoped: Mapping[str, str],
    ) -> None:
        cwd = (self.project_root / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise StepFailure(
                stage=stage.name,
                step=step.name,
                index=index,
                cmd=step.run,
                exit_code=127,
                output=f"working directory not found: {cwd}",
            )

        env = self.step_env(stage, step, environment, stage_scoped, cwd)
        result = self.runner(step.run, cwd=cwd, env=env)

        if not result.ok:
            hint = None
            if result.exit_code == 127:
                hint = tool_hint(step.run.strip(), result.output)
            raise StepFailure(
                stage=stage.name,
                step=step.name,
                index=index,
                cmd=step.run,
                exit_code=result.exit_code,
                output=_tail(result.output),
                hint=hint,
            )
        get_console().print_debug(f"[{stage.name}] step {index} output:\n{result.output.rstrip()}")
