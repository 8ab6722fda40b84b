# src/stageci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .model import CacheSpec, EnvironmentOptions, Stage, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    export: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step. `export` variables stay set for the rest of the stage."""
    return Step(name=name, run=cmd, cwd=cwd, env=env or {}, export=export or {})


def setup(
    name: str = "Environment setup",
    *,
    install_toolchain: bool = False,
    install_fast_linker: bool = False,
    initial: bool = False,
) -> Step:
    """Create a provisioning step."""
    return Step(
        name=name,
        kind="setup",
        options=EnvironmentOptions(
            install_toolchain=install_toolchain,
            install_fast_linker=install_fast_linker,
            initial=initial,
        ),
    )


def cache(
    path: str,
    *,
    purpose: str | None = None,
    lock_files: Iterable[str] = ("**/Cargo.lock",),
    skip_on_hit: bool = False,
) -> CacheSpec:
    return CacheSpec(path=path, purpose=purpose, lock_files=tuple(lock_files), skip_on_hit=skip_on_hit)


# ---------------------------------------------------------------------
# Functional Stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: Step,  # allow: stage("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: stage("x", steps_list=[...])
    needs: Optional[List[str] | str] = None,
    env: Optional[Dict[str, str]] = None,
    options: Optional[EnvironmentOptions] = None,
    cache: Optional[CacheSpec] = None,
    report: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Stage:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"stage({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.is_setup or s.cwd is not None else replace(s, cwd=cwd)
            for s in steps_final
        ]

    if isinstance(needs, str):
        needs = [needs]

    return Stage(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        env=env or {},
        options=options,
        cache=cache,
        report=report,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._options: Optional[EnvironmentOptions] = None
        self._cache: Optional[CacheSpec] = None
        self._report: Optional[str] = None

    def depends_on(self, *stage_names: str):
        self._needs.extend(stage_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **env):
        self._steps.append(sh(name, run, cwd=cwd, env={k: str(v) for k, v in env.items()}))
        return self

    def define_setup(self, name: str = "Environment setup", **options):
        self._steps.append(setup(name, **options))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_options(self, **options):
        self._options = EnvironmentOptions(**options)
        return self

    def cache_dir(self, path: str, **kw):
        self._cache = cache(path, **kw)
        return self

    def produces_report(self, path: str):
        self._report = path
        return self

    def build(self) -> Stage:
        if not self._steps:
            raise ValueError(f"Stage '{self.name}' has no steps")
        return Stage(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            env=self._env,
            options=self._options,
            cache=self._cache,
            report=self._report,
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*stages: Stage) -> List[Stage]:
    """
    Workflow definition helper.

        from stageci import wf, stage, sh

        def workflow():
            return wf(
                stage(...),
                stage(...),
            )

    Or use STAGES directly:
        STAGES = wf(stage(...), stage(...))
    """
    return list(stages)
