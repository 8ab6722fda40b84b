# shell.py
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional

from . import settings


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str  # combined stdout + stderr

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# (script, *, cwd, env) -> CommandResult
CommandRunner = Callable[..., CommandResult]


def run_command(
    script: str,
    *,
    cwd: str | Path,
    env: Optional[Mapping[str, str]] = None,
    shell: str | None = None,
) -> CommandResult:
    """
    Run a (possibly multi-line) shell script with `-e`, so the first failing
    line fails the whole script.
    """
    try:
        proc = subprocess.run(
            [shell or settings.SHELL, "-e", "-c", script],
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            text=True,
            errors="replace",
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except FileNotFoundError as e:
        # the shell itself is missing
        return CommandResult(exit_code=127, output=str(e))
    return CommandResult(exit_code=proc.returncode, output=proc.stdout or "")
