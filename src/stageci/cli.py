# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path

import click

from . import settings
from .coverage import uploader_from_settings
from .dag import build_graph, topo_levels
from .declaration import dump_declaration
from .errors import ConfigurationError, StageCIError
from .pgo import DEFAULT_TARGET, PGOConfig, run_pgo
from .registry import StageRegistry
from .runner import load_workflow, make_scheduler
from .ui.console import Console, get_console, set_console

WORKFLOW_SUFFIXES = (".py", ".yaml", ".yml")


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in `directory`.

    Returns:
        stageci_workflow.{py,yaml,yml} and *_workflow.{py,yaml,yml}, sorted
    """
    found: set[Path] = set()
    for suffix in WORKFLOW_SUFFIXES:
        found.update(directory.glob(f"*_workflow{suffix}"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the --workflow argument or by discovery.

    Raises:
        SystemExit: If no workflow (or more than one) can be found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in WORKFLOW_SUFFIXES:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  stageci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  stageci_workflow.py", "  *_workflow.py / *_workflow.yaml"],
            suggestion="Create stageci_workflow.py, or specify a workflow explicitly:\n  stageci run --workflow ci.yaml",
        )
        sys.exit(1)

    default = [p for p in workflow_files if p.stem == "stageci_workflow"]
    if len(default) == 1:
        return default[0]

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  stageci run --workflow stageci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(ctx, workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", f"Could not load {workflow_path}", details=[str(e)])
        sys.exit(1)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stageci: dependency-aware, cache-aware CI stage runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file (.py or .yaml; defaults to stageci_workflow.py if present)",
)
@click.option(
    "--workers",
    default=None,
    type=click.IntRange(min=1),
    envvar="STAGECI_MAX_WORKERS",
    help="Maximum number of stages running at once",
)
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--cache/--no-cache", "use_cache", default=True, help="Restore and save stage caches")
@click.option("--upload/--no-upload", default=True, help="Upload coverage reports when CODECOV_TOKEN is set")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the stage graph first")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, use_cache, upload, print_plan):
    """Run every stage of a workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    stages = _load(ctx, workflow_path)

    try:
        scheduler = make_scheduler(
            stages,
            project_root=".",
            cache_root=cache_dir,
            max_workers=workers,
            uploader=uploader_from_settings() if upload else None,
            use_cache=use_cache,
        )
        graph = scheduler.build()
    except ConfigurationError as e:
        console.print_error("Invalid stage graph", str(e))
        sys.exit(1)

    console.print_run_started(
        project=Path(".").resolve().name,
        workflow=workflow_path.name,
        stage_count=len(stages),
        workers=scheduler.max_workers,
    )
    if print_plan:
        console.print_plan(topo_levels(graph), {s.name: s.needs for s in stages})

    def _cancel(signum, frame):
        console.print_info("\nInterrupted, cancelling running stages...")
        scheduler.cancel()

    previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = scheduler.run()
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    console.print_report(report)
    if report.cancelled:
        sys.exit(130)
    sys.exit(report.exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yaml)")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["text", "yaml"]),
    default="text",
    show_default=True,
    help="text: stages by level; yaml: the normalized declaration",
)
@click.pass_context
def plan(ctx, workflow, fmt):
    """Validate a workflow and show its stage graph without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    stages = _load(ctx, workflow_path)

    try:
        graph = build_graph(StageRegistry(stages).all())
    except ConfigurationError as e:
        console.print_error("Invalid stage graph", str(e))
        sys.exit(1)

    if fmt == "yaml":
        click.echo(dump_declaration(stages), nl=False)
        return
    console.print_plan(topo_levels(graph), {s.name: s.needs for s in stages})


@cli.command()
@click.option("--binary", required=True, help="Name of the cargo binary to optimize")
@click.option("--target", default=DEFAULT_TARGET, show_default=True, help="Target triple")
@click.option("--output", "output_dir", default="pgo", show_default=True, help="Where the final binary and perf.log go")
@click.option("--prepare", default=None, help="Idempotent command run before every workload execution")
@click.option("--repetitions", default=10, show_default=True, type=click.IntRange(min=1), help="perf stat repetitions")
@click.option("--measure/--no-measure", default=True, help="Compare baseline and final binaries with perf stat")
@click.option("--project", "project_root", default=".", type=click.Path(file_okay=False), help="Cargo project root")
@click.pass_context
def pgo(ctx, binary, target, output_dir, prepare, repetitions, measure, project_root):
    """Build a PGO + BOLT optimized binary."""
    console = get_console()
    console.print_header(f"PGO: {binary} ({target})")
    try:
        config = PGOConfig(
            project_root=Path(project_root),
            binary=binary,
            target=target,
            output_dir=Path(output_dir),
            prepare=prepare,
            repetitions=repetitions,
            measure=measure,
        )
        run_pgo(config)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except StageCIError as e:
        console.print_exception(e)
        sys.exit(1)


if __name__ == "__main__":
    cli()
