"""
YAML / dict declaration of a pipeline.

Example::

    env:
      RUST_BACKTRACE: "1"
    stages:
      setup:
        steps:
          - name: Environment setup
            setup: {install-toolchain: true, initial: true}
      fmt:
        needs: setup
        steps:
          - setup: {}
          - name: Check formatting
            run: cargo fmt --check --all
      clippy:
        needs: [fmt]
        setup: {install-fast-linker: true}
        cache: {path: target/, lock-files: ["**/Cargo.lock"]}
        steps:
          - run: cargo clippy --all-features --workspace --all-targets -- -Dwarnings
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError, DuplicateStageError
from .model import CacheSpec, EnvironmentOptions, Stage, Step


def _as_str_map(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected a mapping of names to values")
    # YAML booleans keep shell spelling: true -> "true"
    return {str(k): str(v).lower() if isinstance(v, bool) else str(v) for k, v in value.items()}


class StepDecl(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    run: Optional[str] = None
    setup: Optional[Dict[str, Any]] = Field(None, description="Environment options for a setup step")
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    export: Dict[str, str] = Field(default_factory=dict)

    @field_validator("env", "export", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _as_str_map(v)

    @model_validator(mode="after")
    def _one_kind(self) -> StepDecl:
        if (self.run is None) == (self.setup is None):
            raise ValueError("a step needs exactly one of 'run' or 'setup'")
        return self

    def to_step(self, index: int) -> Step:
        if self.setup is not None:
            return Step(
                name=self.name or "Environment setup",
                kind="setup",
                options=EnvironmentOptions.from_mapping(self.setup),
            )
        first_line = self.run.strip().splitlines()[0] if self.run and self.run.strip() else f"step {index}"
        return Step(
            name=self.name or first_line,
            run=self.run or "",
            cwd=self.cwd,
            env=self.env,
            export=self.export,
        )


class CacheDecl(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    path: str
    purpose: Optional[str] = None
    lock_files: List[str] = Field(default_factory=lambda: ["**/Cargo.lock"], alias="lock-files")
    skip_on_hit: bool = Field(False, alias="skip-on-hit")

    def to_spec(self) -> CacheSpec:
        return CacheSpec(
            path=self.path,
            purpose=self.purpose,
            lock_files=tuple(self.lock_files),
            skip_on_hit=self.skip_on_hit,
        )


class StageDecl(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    needs: List[str] = Field(default_factory=list)
    steps: List[StepDecl]
    setup: Optional[Dict[str, Any]] = None
    cache: Optional[CacheDecl] = None
    env: Dict[str, str] = Field(default_factory=dict)
    report: Optional[str] = None

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _as_str_map(v)

    @field_validator("steps")
    @classmethod
    def _not_empty(cls, v):
        if not v:
            raise ValueError("a stage needs at least one step")
        return v

    def to_stage(self, name: str, workflow_env: Dict[str, str]) -> Stage:
        env = dict(workflow_env)
        env.update(self.env)
        return Stage(
            name=name,
            steps=tuple(s.to_step(i) for i, s in enumerate(self.steps, start=1)),
            needs=tuple(self.needs),
            options=EnvironmentOptions.from_mapping(self.setup) if self.setup is not None else None,
            cache=self.cache.to_spec() if self.cache else None,
            env=env,
            report=self.report,
        )


class WorkflowDecl(BaseModel):
    model_config = ConfigDict(extra="forbid")

    env: Dict[str, str] = Field(default_factory=dict)
    stages: Dict[str, StageDecl]

    @field_validator("env", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _as_str_map(v)

    def to_stages(self) -> List[Stage]:
        return [decl.to_stage(name, self.env) for name, decl in self.stages.items()]


def parse_declaration(data: Any) -> List[Stage]:
    """Validate a decoded declaration (dict) and build its stages."""
    try:
        return WorkflowDecl.model_validate(data or {}).to_stages()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid stage declaration:\n{e}") from e


class _StrictLoader(yaml.SafeLoader):
    """SafeLoader that rejects repeated mapping keys instead of keeping the last one."""

    _stages_node = None

    def construct_document(self, node):
        self._stages_node = None
        if isinstance(node, yaml.MappingNode):
            for key_node, value_node in node.value:
                if isinstance(key_node, yaml.ScalarNode) and key_node.value == "stages":
                    self._stages_node = value_node
        return super().construct_document(node)

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=True)
            try:
                duplicate = key in seen
            except TypeError:
                # unhashable, reported by SafeLoader itself
                continue
            if duplicate:
                if node is self._stages_node:
                    raise DuplicateStageError(str(key))
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark,
                    f"found duplicate key {key!r}", key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def load_declaration(path: str | Path) -> List[Stage]:
    """Read a YAML declaration file."""
    file_path = Path(path)
    try:
        raw = yaml.load(file_path.read_text(encoding="utf-8"), Loader=_StrictLoader) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e
    return parse_declaration(raw)


# ---------------------------------------------------------------------
# Reverse direction (for `stageci plan --format yaml`)
# ---------------------------------------------------------------------

def _options_dict(options: EnvironmentOptions) -> Dict[str, bool]:
    return {k: v for k, v in options.to_dict().items() if v}


def stage_to_dict(stage: Stage) -> Dict[str, Any]:
    """Convert a Stage into its declaration mapping (inverse of StageDecl.to_stage)."""
    steps = []
    for step in stage.steps:
        if step.is_setup:
            steps.append({"name": step.name, "setup": _options_dict(step.options)})
            continue
        step_dict: Dict[str, Any] = {"name": step.name, "run": step.run}
        if step.cwd is not None:
            step_dict["cwd"] = step.cwd
        if step.env:
            step_dict["env"] = dict(step.env)
        if step.export:
            step_dict["export"] = dict(step.export)
        steps.append(step_dict)

    out: Dict[str, Any] = {"steps": steps}
    if stage.needs:
        out["needs"] = list(stage.needs)
    if stage.options is not None:
        out["setup"] = _options_dict(stage.options)
    if stage.cache is not None:
        cache: Dict[str, Any] = {"path": stage.cache.path, "lock-files": list(stage.cache.lock_files)}
        if stage.cache.purpose:
            cache["purpose"] = stage.cache.purpose
        if stage.cache.skip_on_hit:
            cache["skip-on-hit"] = True
        out["cache"] = cache
    if stage.env:
        out["env"] = dict(stage.env)
    if stage.report:
        out["report"] = stage.report
    return out


def dump_declaration(stages: List[Stage]) -> str:
    data = {"stages": {s.name: stage_to_dict(s) for s in stages}}
    return yaml.safe_dump(data, sort_keys=False)
