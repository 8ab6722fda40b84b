"""Shared fakes: a recording command runner and an in-memory cache store."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from stageci.errors import CacheError
from stageci.shell import CommandResult
from stageci.ui.console import Console, set_console


class FakeRunner:
    """
    Stands in for stageci.shell.run_command.

    `fail` maps a substring of the script to the exit code to return.
    `effects` maps a substring to a callable(cwd, env) run before returning,
    so a fake command can leave files behind.
    """

    def __init__(
        self,
        fail: Optional[Dict[str, int]] = None,
        effects: Optional[Dict[str, Callable[[Path, Dict[str, str]], None]]] = None,
        output: str = "",
    ):
        self.fail = dict(fail or {})
        self.effects = dict(effects or {})
        self.output = output
        self.calls: List[tuple[str, Path, Dict[str, str]]] = []
        self._lock = threading.Lock()

    def __call__(self, script, *, cwd, env=None, shell=None) -> CommandResult:
        env = dict(env or {})
        with self._lock:
            self.calls.append((script, Path(cwd), env))
        for needle, effect in self.effects.items():
            if needle in script:
                effect(Path(cwd), env)
        for needle, code in self.fail.items():
            if needle in script:
                return CommandResult(exit_code=code, output=f"{needle}: boom\n")
        return CommandResult(exit_code=0, output=self.output)

    @property
    def scripts(self) -> List[str]:
        return [c[0] for c in self.calls]

    def env_of(self, needle: str) -> Dict[str, str]:
        for script, _, env in self.calls:
            if needle in script:
                return env
        raise AssertionError(f"no call matching {needle!r}")


class MemoryCacheStore:
    """CacheStore keeping directory trees as {relpath: bytes} in memory."""

    def __init__(self):
        self.entries: Dict[str, Dict[str, bytes]] = {}
        self.corrupt: set[str] = set()

    def contains(self, key: str) -> bool:
        return key in self.entries

    def save(self, key: str, src: Path) -> None:
        src = Path(src)
        self.entries[key] = {
            p.relative_to(src).as_posix(): p.read_bytes() for p in sorted(src.rglob("*")) if p.is_file()
        }

    def load(self, key: str, dest: Path) -> None:
        if key not in self.entries or key in self.corrupt:
            raise CacheError(f"cannot read {key}")
        dest.mkdir(parents=True, exist_ok=True)
        for rel, data in self.entries[key].items():
            target = dest / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=False)
    set_console(console)
    yield console


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def memory_store():
    return MemoryCacheStore()


@pytest.fixture
def project(tmp_path):
    """A minimal cargo-looking project directory."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "Cargo.lock").write_text("# lock v1\n", encoding="utf-8")
    return root
