# provision.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from . import settings
from .errors import ProvisioningError
from .model import EnvironmentOptions
from .shell import CommandRunner, run_command


@dataclass(frozen=True)
class ToolchainProfile:
    """
    How each environment option is satisfied for one language toolchain.

    Command templates may use {version}. `*_env` values are set, `*_append`
    values are appended (space separated) to whatever the variable holds.
    """
    name: str
    toolchain_cmd: str
    fast_linker_cmd: str
    bootstrap_cmd: str
    toolchain_env: Mapping[str, str] = field(default_factory=dict)
    fast_linker_append: Mapping[str, str] = field(default_factory=dict)


RUST = ToolchainProfile(
    name="rust",
    toolchain_cmd=(
        "rustup toolchain install {version} --profile minimal "
        "--component rustfmt,clippy,llvm-tools-preview"
    ),
    fast_linker_cmd="command -v mold >/dev/null || sudo apt-get install -y mold",
    bootstrap_cmd="cargo fetch",
    toolchain_env={"RUSTUP_TOOLCHAIN": "{version}"},
    fast_linker_append={"RUSTFLAGS": "-C link-arg=-fuse-ld=mold"},
)

PROFILES = {RUST.name: RUST}


@dataclass(frozen=True)
class EnvironmentHandle:
    """
    The environment a stage runs in. Immutable: equal options, profile and
    version always give an equal handle.
    """
    options: EnvironmentOptions
    profile: str
    env: Tuple[Tuple[str, str], ...] = ()
    append: Tuple[Tuple[str, str], ...] = ()

    def apply(self, base: Mapping[str, str]) -> Dict[str, str]:
        """Variables to set on top of `base` to enter this environment."""
        out = dict(self.env)
        for key, extra in self.append:
            current = out.get(key, base.get(key, ""))
            out[key] = current if extra in current else f"{current} {extra}".strip()
        return out


class EnvironmentProvisioner:
    """
    Turns EnvironmentOptions into an EnvironmentHandle, running the install
    commands the options ask for. Every command is safe to re-run.
    """

    def __init__(
        self,
        project_root: str | Path = ".",
        *,
        profile: ToolchainProfile = RUST,
        version: str | None = None,
        runner: CommandRunner = run_command,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.profile = profile
        self.version = version or settings.TOOLCHAIN
        self.runner = runner
        self.base_env = dict(os.environ if base_env is None else base_env)

    def handle_for(self, options: EnvironmentOptions) -> EnvironmentHandle:
        env: Dict[str, str] = {}
        append: Dict[str, str] = {}
        if options.install_toolchain:
            env.update({k: v.format(version=self.version) for k, v in self.profile.toolchain_env.items()})
        if options.install_fast_linker:
            append.update(self.profile.fast_linker_append)
        return EnvironmentHandle(
            options=options,
            profile=self.profile.name,
            env=tuple(sorted(env.items())),
            append=tuple(sorted(append.items())),
        )

    def commands_for(self, options: EnvironmentOptions) -> List[Tuple[str, str]]:
        """(option, command) pairs in install order."""
        cmds: List[Tuple[str, str]] = []
        if options.install_toolchain:
            cmds.append(("install-toolchain", self.profile.toolchain_cmd.format(version=self.version)))
        if options.install_fast_linker:
            cmds.append(("install-fast-linker", self.profile.fast_linker_cmd.format(version=self.version)))
        if options.initial:
            cmds.append(("initial", self.profile.bootstrap_cmd.format(version=self.version)))
        return cmds

    def provision(self, options: EnvironmentOptions) -> EnvironmentHandle:
        handle = self.handle_for(options)
        env = dict(self.base_env)
        env.update(handle.apply(env))

        for option, cmd in self.commands_for(options):
            result = self.runner(cmd, cwd=self.project_root, env=env)
            if not result.ok:
                raise ProvisioningError(
                    option=option,
                    command=cmd,
                    exit_code=result.exit_code,
                    output=result.output[-settings.OUTPUT_TAIL:],
                )
        return handle
