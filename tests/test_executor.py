import threading

from conftest import FakeRunner

from stageci.dsl import setup, sh, stage
from stageci.executor import StepExecutor, expand_vars, tool_hint
from stageci.model import SKIP_CANCELLED, EnvironmentOptions, RunStatus
from stageci.provision import EnvironmentProvisioner


def _executor(root, runner, base_env=None):
    base_env = {"PATH": "/usr/bin", "HOME": "/home/ci"} if base_env is None else base_env
    prov = EnvironmentProvisioner(root, runner=runner, version="stable", base_env=base_env)
    return StepExecutor(root, prov, runner=runner, base_env=base_env), prov


def test_steps_run_in_order(project):
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    st = stage("lint", sh("one", "echo 1"), sh("two", "echo 2"), sh("three", "echo 3"))
    result = ex.run(st, prov.handle_for(EnvironmentOptions()))
    assert result.status is RunStatus.SUCCEEDED
    assert runner.scripts == ["echo 1", "echo 2", "echo 3"]


def test_first_failure_stops_the_stage(project):
    runner = FakeRunner(fail={"cargo audit": 1})
    ex, prov = _executor(project, runner)
    st = stage("audit", sh("fetch", "cargo fetch"), sh("audit", "cargo audit"), sh("after", "echo never"))
    result = ex.run(st, prov.handle_for(EnvironmentOptions()))
    assert result.status is RunStatus.FAILED
    assert result.step_index == 2
    assert result.exit_code == 1
    assert "boom" in result.output
    assert "echo never" not in runner.scripts


def test_step_env_does_not_leak(project):
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    st = stage(
        "t",
        sh("first", "echo first", env={"ONLY_HERE": "1"}),
        sh("second", "echo second"),
        env={"STAGE_WIDE": "yes"},
    )
    ex.run(st, prov.handle_for(EnvironmentOptions()))
    assert runner.env_of("echo first")["ONLY_HERE"] == "1"
    assert "ONLY_HERE" not in runner.env_of("echo second")
    assert runner.env_of("echo second")["STAGE_WIDE"] == "yes"


def test_exported_env_persists_for_the_stage(project):
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    st = stage(
        "tests",
        sh("run", "cargo nextest run", export={"LLVM_PROFILE_FILE": "$PWD/target/p-%p.profraw"}),
        sh("report", "cargo llvm-cov report"),
    )
    ex.run(st, prov.handle_for(EnvironmentOptions()))
    expected = f"{project.resolve()}/target/p-%p.profraw"
    assert runner.env_of("nextest")["LLVM_PROFILE_FILE"] == expected
    assert runner.env_of("llvm-cov")["LLVM_PROFILE_FILE"] == expected


def test_step_env_overrides_stage_env(project):
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    st = stage("t", sh("s", "echo", env={"MODE": "step"}), env={"MODE": "stage"})
    ex.run(st, prov.handle_for(EnvironmentOptions()))
    assert runner.env_of("echo")["MODE"] == "step"


def test_exports_extend_provisioned_flags(project):
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    st = stage("t", sh("s", "cargo build", export={"RUSTFLAGS": "${RUSTFLAGS} -C instrument-coverage"}))
    ex.run(st, prov.handle_for(EnvironmentOptions(install_fast_linker=True)))
    assert runner.env_of("cargo build")["RUSTFLAGS"] == "-C link-arg=-fuse-ld=mold -C instrument-coverage"


def test_missing_cwd_fails_the_step(project):
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    st = stage("t", sh("s", "ls", cwd="does-not-exist"))
    result = ex.run(st, prov.handle_for(EnvironmentOptions()))
    assert result.status is RunStatus.FAILED
    assert result.exit_code == 127
    assert runner.calls == []


def test_cwd_is_relative_to_project(project):
    (project / "crates" / "core").mkdir(parents=True)
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    ex.run(stage("t", sh("s", "cargo test", cwd="crates/core")), prov.handle_for(EnvironmentOptions()))
    _, cwd, env = runner.calls[0]
    assert cwd == (project / "crates" / "core").resolve()
    assert env["PWD"] == str(cwd)


def test_missing_tool_gets_a_hint(project):
    runner = FakeRunner(fail={"cargo deny": 127})
    ex, prov = _executor(project, runner)
    result = ex.run(stage("deny", sh("deny", "cargo deny check")), prov.handle_for(EnvironmentOptions()))
    assert result.exit_code == 127
    assert "cargo install cargo-deny" in result.hint


def test_setup_step_provisions_with_merged_options(project):
    runner = FakeRunner()
    ex, prov = _executor(project, runner)
    st = stage("clippy", setup(install_fast_linker=True), sh("clippy", "cargo clippy"))
    env = prov.handle_for(EnvironmentOptions(install_toolchain=True))
    result = ex.run(st, env)
    assert result.status is RunStatus.SUCCEEDED
    assert any(s.startswith("rustup toolchain install stable") for s in runner.scripts)
    assert any("mold" in s for s in runner.scripts)
    clippy_env = runner.env_of("cargo clippy")
    assert clippy_env["RUSTUP_TOOLCHAIN"] == "stable"
    assert "-fuse-ld=mold" in clippy_env["RUSTFLAGS"]


def test_failed_setup_step_fails_the_stage(project):
    runner = FakeRunner(fail={"rustup": 1})
    ex, prov = _executor(project, runner)
    st = stage("fmt", setup(install_toolchain=True), sh("fmt", "cargo fmt --check"))
    result = ex.run(st, prov.handle_for(EnvironmentOptions()))
    assert result.status is RunStatus.FAILED
    assert result.step_index == 1
    assert "cargo fmt --check" not in runner.scripts


def test_cancel_stops_at_step_boundary(project):
    cancel = threading.Event()
    runner = FakeRunner(effects={"first": lambda cwd, env: cancel.set()})
    ex, prov = _executor(project, runner)
    st = stage("t", sh("a", "echo first"), sh("b", "echo second"))
    result = ex.run(st, prov.handle_for(EnvironmentOptions()), cancel)
    assert result.status is RunStatus.SKIPPED
    assert result.reason == SKIP_CANCELLED
    assert runner.scripts == ["echo first"]


def test_expand_vars():
    env = {"HOME": "/home/ci", "EMPTY": ""}
    assert expand_vars("$HOME/.cargo", env) == "/home/ci/.cargo"
    assert expand_vars("${HOME}/bin", env) == "/home/ci/bin"
    assert expand_vars("${MISSING:-fallback}", env) == "fallback"
    assert expand_vars("${EMPTY:-fallback}", env) == "fallback"
    assert expand_vars("x${MISSING}y", env) == "xy"
    assert expand_vars("%p-%24m", env) == "%p-%24m"


def test_tool_hint():
    assert "cargo-nextest" in tool_hint("cargo nextest run")
    assert "perf" in tool_hint("perf stat -r 10 ./bin")
    assert "mold" in tool_hint("cargo build", "bash: mold: command not found")
    assert tool_hint("some-unknown-tool --flag") is None
    assert tool_hint("") is None
