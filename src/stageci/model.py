# model.py
from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

# Original workflow spelling -> canonical option name
OPTION_ALIASES = {
    "install-toolchain": "install_toolchain",
    "install_toolchain": "install_toolchain",
    "install-rust": "install_toolchain",
    "install-fast-linker": "install_fast_linker",
    "install_fast_linker": "install_fast_linker",
    "install-mold": "install_fast_linker",
    "initial": "initial",
}

SKIP_UPSTREAM = "upstream-failure"
SKIP_CANCELLED = "cancelled"


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class EnvironmentOptions:
    """What the environment provisioner should prepare. Absent flags are false."""
    install_toolchain: bool = False
    install_fast_linker: bool = False
    initial: bool = False

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> EnvironmentOptions:
        # unrecognized keys are ignored
        kwargs: Dict[str, bool] = {}
        for key, value in (data or {}).items():
            canonical = OPTION_ALIASES.get(str(key))
            if canonical is not None:
                kwargs[canonical] = kwargs.get(canonical, False) or _truthy(value)
        return cls(**kwargs)

    def __or__(self, other: EnvironmentOptions) -> EnvironmentOptions:
        return EnvironmentOptions(
            install_toolchain=self.install_toolchain or other.install_toolchain,
            install_fast_linker=self.install_fast_linker or other.install_fast_linker,
            initial=self.initial or other.initial,
        )

    def enabled(self) -> List[str]:
        return [f.name for f in fields(self) if getattr(self, f.name)]

    def to_dict(self) -> Dict[str, bool]:
        return {
            "install-toolchain": self.install_toolchain,
            "install-fast-linker": self.install_fast_linker,
            "initial": self.initial,
        }


@dataclass(frozen=True)
class CacheSpec:
    """
    Where a stage's reusable artifact lives and what its key is derived from.

    key = "<purpose>-<os>-<hash of lock_files>"
    """
    path: str
    purpose: Optional[str] = None
    lock_files: Tuple[str, ...] = ("**/Cargo.lock",)
    skip_on_hit: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "lock_files", tuple(self.lock_files))


@dataclass(frozen=True)
class Step:
    """
    One unit of work inside a stage.

    kind="run":   `run` is a shell script (one or more lines).
    kind="setup": `options` is handed to the environment provisioner.

    `env` applies to this step only, `export` persists for the rest of the stage.
    """
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str = "run"
    env: Mapping[str, str] = field(default_factory=dict)
    export: Mapping[str, str] = field(default_factory=dict)
    options: Optional[EnvironmentOptions] = None

    def __post_init__(self) -> None:
        if self.kind not in ("run", "setup"):
            raise ValueError(f"step {self.name!r}: unknown kind {self.kind!r}")
        if self.kind == "setup" and self.options is None:
            object.__setattr__(self, "options", EnvironmentOptions())
        if self.kind == "run" and not self.run.strip():
            raise ValueError(f"step {self.name!r} has no command")
        object.__setattr__(self, "env", {k: str(v) for k, v in dict(self.env).items()})
        object.__setattr__(self, "export", {k: str(v) for k, v in dict(self.export).items()})

    @property
    def is_setup(self) -> bool:
        return self.kind == "setup"


@dataclass(frozen=True)
class Stage:
    """A named unit of work: ordered steps + the stages it needs."""
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    options: Optional[EnvironmentOptions] = None
    cache: Optional[CacheSpec] = None
    env: Mapping[str, str] = field(default_factory=dict)
    report: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("stage name must not be empty")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(dict.fromkeys(self.needs)))
        object.__setattr__(self, "env", {k: str(v) for k, v in dict(self.env).items()})


# ----------------------------------------------------------------------
# Run results
# ----------------------------------------------------------------------

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.SKIPPED)


@dataclass(frozen=True)
class RunResult:
    status: RunStatus
    reason: Optional[str] = None
    step_index: Optional[int] = None
    exit_code: Optional[int] = None
    upstream: Optional[str] = None
    cached: bool = False
    output: str = ""
    hint: Optional[str] = None
    duration: float = 0.0

    @classmethod
    def pending(cls) -> RunResult:
        return cls(RunStatus.PENDING)

    @classmethod
    def running(cls) -> RunResult:
        return cls(RunStatus.RUNNING)

    @classmethod
    def succeeded(cls, *, cached: bool = False, duration: float = 0.0) -> RunResult:
        return cls(RunStatus.SUCCEEDED, cached=cached, duration=duration)

    @classmethod
    def failed(cls, reason: str, **kw: Any) -> RunResult:
        return cls(RunStatus.FAILED, reason=reason, **kw)

    @classmethod
    def skipped(cls, reason: str, upstream: Optional[str] = None) -> RunResult:
        return cls(RunStatus.SKIPPED, reason=reason, upstream=upstream)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def describe(self) -> str:
        if self.status is RunStatus.SUCCEEDED:
            return "succeeded (cache)" if self.cached else "succeeded"
        if self.status is RunStatus.FAILED:
            if self.step_index is not None:
                return f"failed (step {self.step_index}, exit={self.exit_code})"
            return f"failed ({self.reason})"
        if self.status is RunStatus.SKIPPED:
            if self.upstream:
                return f"skipped ({self.reason}: {self.upstream})"
            return f"skipped ({self.reason})"
        return self.status.value


@dataclass
class RunReport:
    """Final state of a scheduler run: every stage with exactly one terminal result."""
    results: Dict[str, RunResult]
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return all(r.status is RunStatus.SUCCEEDED for r in self.results.values())

    @property
    def status(self) -> RunStatus:
        return RunStatus.SUCCEEDED if self.succeeded else RunStatus.FAILED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def failures(self) -> List[str]:
        """Stages that failed themselves (the first failing stage of each branch)."""
        return [n for n, r in self.results.items() if r.status is RunStatus.FAILED]

    def skipped(self) -> List[str]:
        return [n for n, r in self.results.items() if r.status is RunStatus.SKIPPED]

    def __getitem__(self, name: str) -> RunResult:
        return self.results[name]
