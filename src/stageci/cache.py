# cache.py
from __future__ import annotations

import hashlib
import json
import platform
import shutil
import tarfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Tuple

from .errors import CacheError
from .model import CacheSpec

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Stage-level caching of a build directory (e.g. cargo's target/):
#   cache_key = "<purpose>-<os>-<hash of lock files>"
#
# The lock files (Cargo.lock, ...) pin every dependency, so equal keys mean
# equal dependency builds. Distinct content never shares a key, which is why
# concurrent writers need nothing beyond an atomic rename.
#
# Restore is all-or-nothing: extract into a staging dir next to the
# destination, then swap it in. Anything unreadable is a miss.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".stageci/cache"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand lock-file patterns into concrete files.
    Supports plain paths ("Cargo.lock") and globs ("**/Cargo.lock").
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.is_file():
            out.append(p)
            continue
        try:
            matches = sorted(repo_root.glob(pat))
        except ValueError:
            matches = []
        out.extend(m for m in matches if m.is_file())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_lock_files(repo_root: str | Path, patterns: Iterable[str]) -> str:
    """
    Hash the lock files matching `patterns`. Empty string when nothing
    matches, so a project without a lock file still gets a stable key.
    """
    root = Path(repo_root).resolve()
    fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        if ".git" in p.relative_to(root).parts:
            continue
        fps.append((_relpath(p, root), _hash_file_contents(p)))
    if not fps:
        return ""
    fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    return _sha256_str(_json_dumps_stable(fps))


def os_identifier() -> str:
    return platform.system() or "unknown"


def compute_cache_key(
    spec: CacheSpec,
    *,
    stage: str,
    repo_root: str | Path = ".",
    os_id: Optional[str] = None,
) -> str:
    purpose = spec.purpose or stage
    return f"{purpose}-{os_id or os_identifier()}-{hash_lock_files(repo_root, spec.lock_files)}"


@dataclass(frozen=True)
class ArtifactHandle:
    """A cache entry known to exist in the store."""
    key: str
    stage: str
    path: str


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class CacheStore(Protocol):
    """Key-addressed directory store."""

    def contains(self, key: str) -> bool: ...

    def save(self, key: str, src: Path) -> None: ...

    def load(self, key: str, dest: Path) -> None:
        """Materialize the entry into the (new, empty) directory `dest`. Raises CacheError."""
        ...


def _check_members(tar: tarfile.TarFile) -> List[tarfile.TarInfo]:
    members = tar.getmembers()
    for m in members:
        parts = Path(m.name).parts
        if m.name.startswith("/") or ".." in parts:
            raise CacheError(f"unsafe path in cache artifact: {m.name}")
        if m.islnk() or m.issym():
            target = Path(m.linkname)
            if target.is_absolute() or ".." in target.parts:
                raise CacheError(f"unsafe link in cache artifact: {m.name} -> {m.linkname}")
    return members


class LocalCacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz
        <key>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def contains(self, key: str) -> bool:
        art = self.artifact_path(key)
        man = self.manifest_path(key)
        if not art.is_file() or not man.is_file():
            return False
        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        return isinstance(stored, dict) and stored.get("key") == key

    def save(self, key: str, src: Path) -> None:
        """
        Archive `src` under `key`, replacing any previous entry.
        The archive is built in a temp file and renamed into place.
        """
        src = Path(src).resolve()
        if not src.is_dir():
            raise CacheError(f"cache path is not a directory: {src}")

        art = self.artifact_path(key)
        man = self.manifest_path(key)
        tmp = self.root / f"{key}.{uuid.uuid4().hex}.tmp"
        files = sum(1 for _ in _iter_files_under(src))
        manifest = {
            "key": key,
            "source": str(src),
            "files": files,
            "created_at_unix": int(time.time()),
        }
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                # tarfile.add recurses in sorted order
                tar.add(str(src), arcname=".")
            # manifest last: an entry without one reads as a miss
            man.unlink(missing_ok=True)
            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        except (OSError, tarfile.TarError) as e:
            raise CacheError(f"could not store {key}: {e}") from e
        finally:
            tmp.unlink(missing_ok=True)

    def load(self, key: str, dest: Path) -> None:
        if not self.contains(key):
            raise CacheError(f"no cache entry for {key}")
        try:
            with tarfile.open(str(self.artifact_path(key)), mode="r:gz") as tar:
                members = _check_members(tar)
                dest.mkdir(parents=True, exist_ok=True)
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(path=str(dest), members=members, filter="data")
                else:
                    tar.extractall(path=str(dest), members=members)
        except (OSError, EOFError, tarfile.TarError) as e:
            raise CacheError(f"cache entry {key} is unreadable: {e}") from e

    def prune(self, prefix: str, keep: int = 3) -> List[str]:
        """
        Keep only the newest N entries whose key starts with `prefix`.
        Uses file mtime as "newest". Returns the removed keys.
        """
        entries = []
        for p in self.root.glob(f"{prefix}*.tar.gz"):
            try:
                entries.append((p.stat().st_mtime, p))
            except FileNotFoundError:
                # removed by a concurrent prune
                continue
        entries.sort(key=lambda t: t[0], reverse=True)
        removed: List[str] = []
        for _, p in entries[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

class CacheManager:
    """
    lookup/restore/store on top of a CacheStore, relative to one project root.
    Never lets a cache problem fail a stage.
    """

    def __init__(self, store: CacheStore, repo_root: str | Path = ".", *, os_id: Optional[str] = None):
        self.backend = store
        self.repo_root = Path(repo_root).resolve()
        self.os_id = os_id or os_identifier()

    def key_for(self, spec: CacheSpec, stage: str) -> str:
        return compute_cache_key(spec, stage=stage, repo_root=self.repo_root, os_id=self.os_id)

    def lookup(self, spec: CacheSpec, stage: str) -> Optional[ArtifactHandle]:
        """Handle on hit, None on miss. Never raises."""
        try:
            key = self.key_for(spec, stage)
            if self.backend.contains(key):
                return ArtifactHandle(key=key, stage=stage, path=spec.path)
        except (OSError, CacheError):
            pass
        return None

    def restore(self, handle: ArtifactHandle) -> bool:
        """
        Replace the cached directory with the stored content, atomically.
        Returns False (a miss) if the entry turns out to be unreadable; the
        destination is then left untouched.
        """
        dest = (self.repo_root / handle.path).resolve()
        dest.parent.mkdir(parents=True, exist_ok=True)
        tag = uuid.uuid4().hex[:12]
        staging = dest.parent / f".{dest.name}.restore-{tag}"
        backup = dest.parent / f".{dest.name}.old-{tag}"

        try:
            self.backend.load(handle.key, staging)
        except (OSError, CacheError):
            shutil.rmtree(staging, ignore_errors=True)
            return False

        moved = False
        try:
            if dest.exists():
                dest.rename(backup)
                moved = True
            staging.rename(dest)
        except OSError:
            # put the previous content back
            if moved and not dest.exists():
                backup.rename(dest)
            shutil.rmtree(staging, ignore_errors=True)
            return False
        shutil.rmtree(backup, ignore_errors=True)
        return True

    def store(self, spec: CacheSpec, stage: str, path: str | Path | None = None) -> Optional[str]:
        """
        Persist `path` (default spec.path) under the spec's key, last writer
        wins. Returns the key, or None when there is nothing to store.
        """
        src = self.repo_root / (path if path is not None else spec.path)
        if not src.is_dir():
            return None
        key = self.key_for(spec, stage)
        self.backend.save(key, src)
        return key

    def prune(self, spec: CacheSpec, stage: str, keep: int) -> List[str]:
        prune = getattr(self.backend, "prune", None)
        if prune is None:
            return []
        purpose = spec.purpose or stage
        return prune(f"{purpose}-{self.os_id}-", keep=keep)
