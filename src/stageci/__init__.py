from .dsl import stage, sh, setup, wf, StageBuilder, build
from .dsl import cache as cache_spec
from .runner import run_pipeline, load_workflow
from .model import Stage, Step, EnvironmentOptions, CacheSpec, RunResult, RunReport, RunStatus

__all__ = [
    "stage",
    "sh",
    "setup",
    "cache_spec",
    "wf",
    "StageBuilder",
    "build",
    "run_pipeline",
    "load_workflow",
    "Stage",
    "Step",
    "EnvironmentOptions",
    "CacheSpec",
    "RunResult",
    "RunReport",
    "RunStatus",
]
