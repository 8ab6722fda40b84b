# runner.py
from __future__ import annotations

import runpy
import threading
import time
from pathlib import Path
from typing import List, Optional

from . import settings
from .cache import CacheManager, LocalCacheStore
from .coverage import CoverageUploader, report_path
from .errors import CacheError, ConfigurationError, ProvisioningError, UploadError
from .executor import StepExecutor
from .model import SKIP_CANCELLED, EnvironmentOptions, RunReport, RunResult, RunStatus, Stage
from .provision import EnvironmentProvisioner
from .registry import StageRegistry
from .scheduler import Scheduler
from .shell import CommandRunner, run_command
from .ui.console import get_console


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Stage]:
    """
    Load stage declarations from a file.

    A .py file must define either:
      - workflow() -> List[Stage]
      - STAGES = [Stage, ...]
    A .yaml/.yml file is validated by stageci.declaration.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yaml", ".yml"):
        from .declaration import load_declaration

        return load_declaration(wf_path)

    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py or .yaml file, got: {wf_path.name}")

    module_name = f"stageci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    stages = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        stages = globals_dict["workflow"]()
    elif "STAGES" in globals_dict:
        stages = globals_dict["STAGES"]

    if not isinstance(stages, list) or not all(isinstance(s, Stage) for s in stages):
        raise ConfigurationError(
            "Workflow must return/define a List[Stage]. "
            "Define workflow() -> List[Stage] or STAGES = [Stage, ...]."
        )
    return stages


# ----------------------------------------------------------------------
# One stage: cache -> provision -> steps -> cache save -> report
# ----------------------------------------------------------------------

class StageRunner:
    """What the scheduler calls for each ready stage."""

    def __init__(
        self,
        project_root: str | Path,
        *,
        provisioner: EnvironmentProvisioner,
        executor: StepExecutor,
        cache: Optional[CacheManager] = None,
        uploader: Optional[CoverageUploader] = None,
        cache_keep: int = settings.CACHE_KEEP,
    ):
        self.project_root = Path(project_root).resolve()
        self.provisioner = provisioner
        self.executor = executor
        self.cache = cache
        self.uploader = uploader
        self.cache_keep = cache_keep

    def __call__(self, stage: Stage, cancel: threading.Event) -> RunResult:
        console = get_console()
        started = time.monotonic()

        # ---- restore ----
        hit = False
        if stage.cache is not None and self.cache is not None:
            handle = self.cache.lookup(stage.cache, stage.name)
            if handle is not None and self.cache.restore(handle):
                hit = True
                console.print_cache_hit(stage.name, handle.key)
                if stage.cache.skip_on_hit:
                    return RunResult.succeeded(cached=True, duration=time.monotonic() - started)
            else:
                console.print_cache_miss(stage.name, self.cache.key_for(stage.cache, stage.name))

        if cancel.is_set():
            return RunResult.skipped(SKIP_CANCELLED)

        # ---- provision ----
        options = stage.options or EnvironmentOptions()
        console.print_provision(stage.name, options.enabled())
        try:
            environment = self.provisioner.provision(options)
        except ProvisioningError as e:
            return RunResult.failed(
                str(e),
                exit_code=e.exit_code,
                output=e.output,
                duration=time.monotonic() - started,
            )

        # ---- run steps ----
        result = self.executor.run(stage, environment, cancel)
        if result.status is not RunStatus.SUCCEEDED:
            return result

        # ---- report ----
        if stage.report:
            report = report_path(self.project_root, stage.report)
            if report is None:
                return RunResult.failed(
                    f"coverage report not produced: {stage.report}",
                    duration=time.monotonic() - started,
                )
            self._upload(stage, report)

        # ---- save ----
        if stage.cache is not None and self.cache is not None and not hit:
            try:
                key = self.cache.store(stage.cache, stage.name)
            except (OSError, CacheError) as e:
                console.print_warning(f"[{stage.name}] cache save failed: {e}")
            else:
                if key:
                    console.print_cache_saved(stage.name, key)
                    try:
                        self.cache.prune(stage.cache, stage.name, keep=self.cache_keep)
                    except (OSError, CacheError) as e:
                        console.print_warning(f"[{stage.name}] cache prune failed: {e}")

        return RunResult.succeeded(duration=time.monotonic() - started)

    def _upload(self, stage: Stage, report: Path) -> None:
        if self.uploader is None:
            return
        try:
            self.uploader.upload(report)
            get_console().print_info(f"[{stage.name}] coverage uploaded: {report.name}")
        except UploadError as e:
            get_console().print_warning(f"[{stage.name}] coverage upload failed: {e}")


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def make_scheduler(
    stages: List[Stage],
    *,
    project_root: str | Path = ".",
    cache_root: str | Path | None = None,
    max_workers: int | None = None,
    uploader: Optional[CoverageUploader] = None,
    runner: CommandRunner = run_command,
    use_cache: bool = True,
) -> Scheduler:
    """Wire registry, provisioner, executor and cache into a ready-to-run Scheduler."""
    root = Path(project_root).resolve()
    registry = StageRegistry(stages)

    provisioner = EnvironmentProvisioner(root, runner=runner)
    executor = StepExecutor(root, provisioner, runner=runner)
    cache = None
    if use_cache:
        cache_dir = Path(cache_root or settings.CACHE_DIR)
        if not cache_dir.is_absolute():
            cache_dir = root / cache_dir
        cache = CacheManager(LocalCacheStore(cache_dir), root)

    stage_runner = StageRunner(
        root,
        provisioner=provisioner,
        executor=executor,
        cache=cache,
        uploader=uploader,
    )
    return Scheduler(registry, stage_runner, max_workers=max_workers)


def run_pipeline(stages: List[Stage], **kwargs) -> RunReport:
    scheduler = make_scheduler(stages, **kwargs)
    scheduler.build()
    return scheduler.run()
