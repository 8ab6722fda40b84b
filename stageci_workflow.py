# stageci_workflow.py
# The cargo project's CI: environment setup, four independent checks,
# clippy, then tests under coverage.
from __future__ import annotations

from stageci.dsl import cache, setup, sh, stage, wf
from stageci.step_workflows.cargo import (
    COVERAGE_REPORT,
    audit_step,
    clippy_step,
    deny_step,
    fmt_step,
    spellcheck_step,
    test_steps,
)

CHECKS = ["fmt", "spellcheck", "audit", "deny"]


def workflow():
    return wf(
        stage(
            "setup",
            setup(install_toolchain=True, initial=True),
        ),
        stage("fmt", setup(install_toolchain=True), fmt_step(), needs="setup"),
        stage("spellcheck", setup(), spellcheck_step(), needs="setup"),
        stage("audit", setup(), audit_step(), needs="setup"),
        stage("deny", setup(), deny_step(), needs="setup"),
        stage(
            "clippy",
            setup(install_toolchain=True, install_fast_linker=True),
            clippy_step(),
            needs=CHECKS,
            cache=cache("target/", purpose="clippy"),
        ),
        stage(
            "tests",
            steps_list=[
                setup(install_toolchain=True, install_fast_linker=True),
                *test_steps(project="bifrost"),
            ],
            needs="clippy",
            cache=cache("target/", purpose="tests"),
            report=COVERAGE_REPORT,
        ),
    )
