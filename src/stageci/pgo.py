# pgo.py
"""
Profile-guided optimization of a cargo binary.

Eight strictly sequential phases, each consuming the previous one's output:

    1. build baseline                5. build with merged profile
    2. build instrumented            6. BOLT instrumentation
    3. workload -> *.profraw         7. workload -> *.fdata
    4. llvm-profdata merge           8. BOLT optimization -> final binary

followed by a `perf stat` comparison of baseline and final binaries. The final
binary and perf.log are published only when every phase succeeds.
"""

from __future__ import annotations

import os
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from . import settings
from .errors import ConfigurationError, PGOPhaseFailure, ProvisioningError
from .executor import tool_hint
from .model import EnvironmentOptions
from .provision import EnvironmentHandle, EnvironmentProvisioner
from .shell import CommandResult, CommandRunner, run_command
from .ui.console import get_console

DEFAULT_TARGET = "x86_64-unknown-linux-gnu"

DEFAULT_COMMANDS: Dict[str, str] = {
    "build": "cargo build --release --target {target}",
    "merge_profiles": "llvm-profdata merge -o {merged} {profiles}",
    "bolt_instrument": (
        "llvm-bolt {binary} -instrument --instrumentation-file={fdata_prefix} "
        "--instrumentation-file-append-pid -o {output}"
    ),
    "merge_fdata": "merge-fdata {fdata_dir}/*.fdata > {fdata}",
    "bolt_optimize": (
        "llvm-bolt {binary} -o {output} -data={fdata} -reorder-blocks=ext-tsp "
        "-reorder-functions=cdsort -split-functions -split-all-cold -dyno-stats"
    ),
    "measure": "perf stat -ddd -o {log} {append} -r {repetitions} -B {binary}",
}

INSTRUMENT_FLAGS = "-Cprofile-generate={profiles}"
OPTIMIZE_FLAGS = "-Cprofile-use={merged} -Cllvm-args=-pgo-warn-missing-function -Clink-args=-Wl,-q"

PROVISION_PHASE = 0
MEASURE_PHASE = 9
PUBLISH_PHASE = 10

_ELAPSED_RE = re.compile(r"^\s*([\d.]+)(?:\s*\+-\s*[\d.]+)?\s+seconds time elapsed", re.MULTILINE)


def parse_elapsed(perf_log: str) -> List[float]:
    """Every "seconds time elapsed" figure in a perf stat log, in order."""
    return [float(m.group(1)) for m in _ELAPSED_RE.finditer(perf_log)]


@dataclass
class PGOConfig:
    project_root: Path
    binary: str
    target: str = DEFAULT_TARGET
    output_dir: Path = Path("pgo")
    prepare: Optional[str] = None  # e.g. "./etc/create_keyspace.sh pgo cassandra cassandra"
    repetitions: int = 10
    measure: bool = True
    commands: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_COMMANDS))

    def __post_init__(self):
        self.project_root = Path(self.project_root).resolve()
        out = Path(self.output_dir)
        self.output_dir = out if out.is_absolute() else self.project_root / out
        if self.repetitions < 1:
            raise ConfigurationError(f"repetitions must be >= 1, got {self.repetitions}")
        missing = set(DEFAULT_COMMANDS) - set(self.commands)
        if missing:
            raise ConfigurationError(f"PGO command templates missing: {', '.join(sorted(missing))}")

    @property
    def built_binary(self) -> Path:
        return self.project_root / "target" / self.target / "release" / self.binary

    @property
    def lock_path(self) -> Path:
        return self.project_root / "target" / ".stageci-pgo.lock"


@dataclass(frozen=True)
class PGOResult:
    binary: Path
    perf_log: Optional[Path]
    baseline: List[float]
    optimized: List[float]


class _WorkDir:
    def __init__(self, root: Path):
        self.root = root
        self.baseline = root / "baseline"
        self.instrumented = root / "instrumented"
        self.profiles = root / "profiles"
        self.merged = root / "merged.profdata"
        self.optimized = root / "optimized"
        self.bolt_instrumented = root / "bolt-instrumented"
        self.bolt_profiles = root / "bolt-profiles"
        self.fdata = root / "merged.fdata"
        self.final = root / "final"
        self.perf_log = root / "perf.log"

    def reset(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)
        for d in (self.root, self.profiles, self.bolt_profiles):
            d.mkdir(parents=True, exist_ok=True)


class _BuildLock:
    """Exclusive ownership of the project's build directory."""

    def __init__(self, path: Path):
        self.path = path
        self._fd: Optional[int] = None

    def __enter__(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            raise ConfigurationError(
                f"Build directory is locked by another PGO run (remove {self.path} if stale)"
            ) from e
        os.write(self._fd, str(os.getpid()).encode())
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return False


class PGOPipeline:
    """
    Runs the eight phases and the measurement pass for one PGOConfig.

    Any failing phase raises PGOPhaseFailure; later phases never run and
    nothing is copied into the output directory.
    """

    def __init__(
        self,
        config: PGOConfig,
        *,
        provisioner: Optional[EnvironmentProvisioner] = None,
        runner: CommandRunner = run_command,
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.runner = runner
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.provisioner = provisioner or EnvironmentProvisioner(
            config.project_root, runner=runner, base_env=self.base_env
        )
        self.work = _WorkDir(config.output_dir / ".work")
        self._environment: Optional[EnvironmentHandle] = None

    def phases(self) -> List[tuple[int, str, Callable[[], None]]]:
        return [
            (1, "build baseline", self._build_baseline),
            (2, "build instrumented", self._build_instrumented),
            (3, "collect profiles", self._collect_profiles),
            (4, "merge profiles", self._merge_profiles),
            (5, "build optimized", self._build_optimized),
            (6, "BOLT instrument", self._bolt_instrument),
            (7, "collect BOLT profiles", self._collect_bolt_profiles),
            (8, "BOLT optimize", self._bolt_optimize),
        ]

    def run(self) -> PGOResult:
        console = get_console()
        with _BuildLock(self.config.lock_path):
            self._environment = self._provision()
            self.work.reset()

            for index, name, phase in self.phases():
                console.print_phase(index, name)
                phase()

            baseline: List[float] = []
            optimized: List[float] = []
            if self.config.measure:
                console.print_phase(MEASURE_PHASE, "measure")
                baseline, optimized = self._measure()

            result = self._publish(baseline, optimized)

        console.print_timings("baseline", result.baseline)
        console.print_timings("optimized", result.optimized)
        console.print_info(f"PGO binary published: {result.binary}")
        return result

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _env(self, rustflags: str = "") -> Dict[str, str]:
        env = dict(self.base_env)
        if self._environment is not None:
            env.update(self._environment.apply(env))
        if rustflags:
            env["RUSTFLAGS"] = f"{env.get('RUSTFLAGS', '')} {rustflags}".strip()
        return env

    def _provision(self) -> EnvironmentHandle:
        get_console().print_phase(PROVISION_PHASE, "provision")
        try:
            return self.provisioner.provision(EnvironmentOptions(install_toolchain=True))
        except ProvisioningError as e:
            raise PGOPhaseFailure(
                phase=PROVISION_PHASE,
                name="provision",
                message=str(e),
                exit_code=e.exit_code,
                details={"output": e.output[-settings.OUTPUT_TAIL:]},
            ) from e

    def _sh(self, phase: int, name: str, cmd: str, env: Optional[Dict[str, str]] = None) -> CommandResult:
        get_console().print_debug(f"[pgo] $ {cmd}")
        result = self.runner(cmd, cwd=self.config.project_root, env=env or self._env())
        if not result.ok:
            details = {"output": result.output[-settings.OUTPUT_TAIL:]}
            hint = tool_hint(cmd.strip(), result.output) if result.exit_code == 127 else None
            if hint:
                details["hint"] = hint
            raise PGOPhaseFailure(
                phase=phase,
                name=name,
                message=f"command failed: {cmd}",
                exit_code=result.exit_code,
                details=details,
            )
        return result

    def _cmd(self, key: str, **values) -> str:
        quoted = {k: shlex.quote(str(v)) if isinstance(v, Path) else v for k, v in values.items()}
        return self.config.commands[key].format(**quoted)

    def _require(self, phase: int, name: str, path: Path, what: str) -> None:
        if not path.is_file():
            raise PGOPhaseFailure(phase=phase, name=name, message=f"{what} not produced: {path}")

    def _require_any(self, phase: int, name: str, directory: Path, pattern: str, what: str) -> None:
        if not any(p.stat().st_size > 0 for p in directory.glob(pattern)):
            raise PGOPhaseFailure(phase=phase, name=name, message=f"no {what} in {directory}")

    def _build(self, phase: int, name: str, dest: Path, rustflags: str = "") -> None:
        self._sh(phase, name, self._cmd("build", target=self.config.target), self._env(rustflags))
        built = self.config.built_binary
        self._require(phase, name, built, "binary")
        shutil.copy2(built, dest)

    def _workload(self, phase: int, name: str, binary: Path, env: Optional[Dict[str, str]] = None) -> None:
        if self.config.prepare:
            self._sh(phase, name, self.config.prepare)
        self._sh(phase, name, shlex.quote(str(binary)), env)

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def _build_baseline(self) -> None:
        self._build(1, "build baseline", self.work.baseline)

    def _build_instrumented(self) -> None:
        flags = INSTRUMENT_FLAGS.format(profiles=self.work.profiles)
        self._build(2, "build instrumented", self.work.instrumented, flags)

    def _collect_profiles(self) -> None:
        env = self._env()
        env["LLVM_PROFILE_FILE"] = str(self.work.profiles / "%p-%m.profraw")
        self._workload(3, "collect profiles", self.work.instrumented, env)
        self._require_any(3, "collect profiles", self.work.profiles, "*.profraw", "raw profile data")

    def _merge_profiles(self) -> None:
        cmd = self._cmd("merge_profiles", merged=self.work.merged, profiles=self.work.profiles)
        self._sh(4, "merge profiles", cmd)
        self._require(4, "merge profiles", self.work.merged, "merged profile")

    def _build_optimized(self) -> None:
        flags = OPTIMIZE_FLAGS.format(merged=self.work.merged)
        self._build(5, "build optimized", self.work.optimized, flags)

    def _bolt_instrument(self) -> None:
        cmd = self._cmd(
            "bolt_instrument",
            binary=self.work.optimized,
            fdata_prefix=self.work.bolt_profiles / "bolt",
            output=self.work.bolt_instrumented,
        )
        self._sh(6, "BOLT instrument", cmd)
        self._require(6, "BOLT instrument", self.work.bolt_instrumented, "instrumented binary")

    def _collect_bolt_profiles(self) -> None:
        self._workload(7, "collect BOLT profiles", self.work.bolt_instrumented)
        self._require_any(7, "collect BOLT profiles", self.work.bolt_profiles, "*.fdata", "BOLT profile data")

    def _bolt_optimize(self) -> None:
        merge = self._cmd("merge_fdata", fdata_dir=self.work.bolt_profiles, fdata=self.work.fdata)
        self._sh(8, "BOLT optimize", merge)
        cmd = self._cmd(
            "bolt_optimize",
            binary=self.work.optimized,
            output=self.work.final,
            fdata=self.work.fdata,
        )
        self._sh(8, "BOLT optimize", cmd)
        self._require(8, "BOLT optimize", self.work.final, "final binary")

    def _measure(self) -> tuple[List[float], List[float]]:
        name = "measure"
        if self.config.prepare:
            self._sh(MEASURE_PHASE, name, self.config.prepare)
        for binary, append in ((self.work.baseline, ""), (self.work.final, "--append")):
            cmd = self._cmd(
                "measure",
                log=self.work.perf_log,
                append=append,
                repetitions=self.config.repetitions,
                binary=binary,
            )
            self._sh(MEASURE_PHASE, name, cmd)
        if self.config.prepare:
            self._sh(MEASURE_PHASE, name, self.config.prepare)

        self._require(MEASURE_PHASE, name, self.work.perf_log, "perf log")
        elapsed = parse_elapsed(self.work.perf_log.read_text(encoding="utf-8", errors="replace"))
        # one summary line per binary
        if len(elapsed) >= 2:
            return elapsed[:-1], elapsed[-1:]
        return elapsed, []

    def _publish(self, baseline: List[float], optimized: List[float]) -> PGOResult:
        out = self.config.output_dir

        # (source, temp, destination); every copy lands before anything is renamed
        files = [(self.work.final, out / f".{self.config.binary}.tmp", out / self.config.binary)]
        perf_log = None
        if self.config.measure:
            perf_log = out / "perf.log"
            files.append((self.work.perf_log, out / ".perf.log.tmp", perf_log))

        try:
            out.mkdir(parents=True, exist_ok=True)
            for src, tmp, _ in files:
                shutil.copy2(src, tmp)
            for _, tmp, dest in files:
                os.replace(tmp, dest)
        except OSError as e:
            raise PGOPhaseFailure(
                phase=PUBLISH_PHASE,
                name="publish",
                message=f"could not publish into {out}: {e}",
            ) from e
        finally:
            for _, tmp, _ in files:
                tmp.unlink(missing_ok=True)

        return PGOResult(binary=files[0][2], perf_log=perf_log, baseline=baseline, optimized=optimized)


def run_pgo(config: PGOConfig, **kwargs) -> PGOResult:
    return PGOPipeline(config, **kwargs).run()
