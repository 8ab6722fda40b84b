# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class StageCIError(Exception):
    """Base class for every error raised by stageci."""


# ----------------------------------------------------------------------
# Configuration (fatal, raised before anything runs)
# ----------------------------------------------------------------------

class ConfigurationError(StageCIError):
    """The declared pipeline is invalid."""


class DuplicateStageError(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Duplicate stage name: {name}")
        self.name = name


class UnknownStageError(ConfigurationError):
    def __init__(self, name: str, known: Optional[List[str]] = None):
        msg = f"Unknown stage: {name}"
        if known:
            msg += f". Known stages: {sorted(known)}"
        super().__init__(msg)
        self.name = name


class UnknownDependencyError(ConfigurationError):
    def __init__(self, stage: str, missing: str):
        super().__init__(f"Stage '{stage}' needs missing stage '{missing}'")
        self.stage = stage
        self.missing = missing


class CyclicDependencyError(ConfigurationError):
    def __init__(self, stuck: List[str]):
        super().__init__(f"Stage graph has a cycle. Stuck stages: {sorted(stuck)}")
        self.stuck = sorted(stuck)


class RegistryFrozenError(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Cannot register '{name}': the run has already started")
        self.name = name


# ----------------------------------------------------------------------
# Stage-local failures
# ----------------------------------------------------------------------

@dataclass
class ProvisioningError(StageCIError):
    """Environment setup failed. Fatal to the owning stage only."""
    option: str
    command: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"provisioning '{self.option}' failed (exit={self.exit_code}): {self.command}"


@dataclass
class StepFailure(StageCIError):
    stage: str
    step: str
    index: int
    cmd: str
    exit_code: int
    output: str = ""
    hint: Optional[str] = None

    def __str__(self) -> str:
        return f"[{self.stage}] step {self.index} '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class CacheError(StageCIError):
    """Cache artifact missing, unreadable or corrupt. Always read as a miss."""


class UploadError(StageCIError):
    """The coverage collaborator rejected or never received the report."""


# ----------------------------------------------------------------------
# PGO
# ----------------------------------------------------------------------

@dataclass
class PGOPhaseFailure(StageCIError):
    phase: int
    name: str
    message: str
    exit_code: Optional[int] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"PGO phase {self.phase} ({self.name}) failed: {self.message}"]
        if self.exit_code is not None:
            lines.append(f"exit={self.exit_code}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
