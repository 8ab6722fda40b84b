# step_workflows/cargo.py
from __future__ import annotations

from typing import Dict, List

from ..dsl import sh
from ..model import Step

# ---------------------------------------------------------------------
# Step helpers for a cargo workspace
# ---------------------------------------------------------------------

COVERAGE_REPORT = "lcov.info"


def fmt_step(name: str = "Check formatting") -> Step:
    return sh(name, "cargo fmt --check --all")


def spellcheck_step(name: str = "Spellcheck") -> Step:
    return sh(name, "cargo spellcheck --code 1")


def audit_step(name: str = "Audit") -> Step:
    return sh(name, "cargo audit")


def deny_step(name: str = "Deny") -> Step:
    return sh(name, "cargo deny check")


def clippy_step(name: str = "Run clippy", *, deny_warnings: bool = True) -> Step:
    cmd = "cargo clippy --all-features --workspace --all-targets"
    if deny_warnings:
        cmd += " -- -Dwarnings"
    return sh(name, cmd)


def coverage_env(target_dir: str = "$PWD/target", project: str = "project") -> Dict[str, str]:
    """
    Stage-scoped variables for an instrumented test run. Values are expanded
    against the step environment, so "$PWD" is the step's working directory.
    """
    return {
        "RUSTFLAGS": (
            "${RUSTFLAGS} -C instrument-coverage --cfg=coverage "
            "--cfg=coverage_nightly --cfg=trybuild_no_target"
        ),
        "LLVM_PROFILE_FILE": f"{target_dir}/{project}-%p-%24m.profraw",
        "CARGO_LLVM_COV": "1",
        "CARGO_LLVM_COV_SHOW_ENV": "1",
        "CARGO_LLVM_COV_TARGET_DIR": target_dir,
    }


def test_steps(
    *,
    report: str = COVERAGE_REPORT,
    project: str = "project",
    ignore_filename_regex: str = "(main).rs",
) -> List[Step]:
    """
    nextest + doctests under coverage instrumentation, then an lcov report.
    The coverage variables are exported on the first step so every later
    step of the stage sees them.
    """
    return [
        sh(
            "Running tests",
            "cargo nextest run --all-features --all-targets",
            export=coverage_env(project=project),
        ),
        sh("Doc tests", "cargo test --doc --all-features"),
        sh(
            "Coverage report",
            f'cargo llvm-cov report --doctests --ignore-filename-regex="{ignore_filename_regex}" '
            f"--lcov --output-path {report}",
        ),
    ]
