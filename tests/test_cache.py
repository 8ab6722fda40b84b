import errno
import os
import shutil
import tarfile
from pathlib import Path

import pytest

from conftest import MemoryCacheStore

from stageci.cache import CacheManager, LocalCacheStore, compute_cache_key, hash_lock_files
from stageci.errors import CacheError
from stageci.model import CacheSpec


def _tree(root):
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


def _fill_target(project):
    target = project / "target"
    (target / "debug" / "deps").mkdir(parents=True)
    (target / "debug" / "deps" / "libfoo.rlib").write_bytes(b"\x00\x01rlib")
    (target / "CACHEDIR.TAG").write_text("Signature: 8a477f597d28d172789f06886806bc55\n")
    return target


def test_key_format(project):
    spec = CacheSpec(path="target/", purpose="clippy")
    key = compute_cache_key(spec, stage="ignored", repo_root=project, os_id="Linux")
    purpose, os_id, digest = key.split("-", 2)
    assert (purpose, os_id) == ("clippy", "Linux")
    assert len(digest) == 64


def test_key_defaults_to_stage_name(project):
    key = compute_cache_key(CacheSpec(path="target/"), stage="tests", repo_root=project, os_id="Linux")
    assert key.startswith("tests-Linux-")


def test_key_changes_with_lock_contents(project):
    spec = CacheSpec(path="target/", purpose="clippy")
    before = compute_cache_key(spec, stage="clippy", repo_root=project, os_id="Linux")
    (project / "Cargo.lock").write_text("# lock v2\n", encoding="utf-8")
    after = compute_cache_key(spec, stage="clippy", repo_root=project, os_id="Linux")
    assert before != after


def test_nested_lock_files_are_hashed(project):
    (project / "crates" / "a").mkdir(parents=True)
    before = hash_lock_files(project, ["**/Cargo.lock"])
    (project / "crates" / "a" / "Cargo.lock").write_text("nested\n")
    assert hash_lock_files(project, ["**/Cargo.lock"]) != before


def test_no_lock_file_gives_empty_hash(tmp_path):
    assert hash_lock_files(tmp_path, ["**/Cargo.lock"]) == ""


def test_store_then_lookup_is_byte_identical(project, tmp_path):
    target = _fill_target(project)
    expected = _tree(target)
    mgr = CacheManager(LocalCacheStore(tmp_path / "cache"), project, os_id="Linux")
    spec = CacheSpec(path="target", purpose="clippy")

    key = mgr.store(spec, "clippy")
    assert key == mgr.key_for(spec, "clippy")

    # a later stage starts from a dirty target dir
    (target / "debug" / "deps" / "libfoo.rlib").write_bytes(b"stale")
    (target / "junk").write_text("x")

    handle = mgr.lookup(spec, "clippy")
    assert handle is not None
    assert mgr.restore(handle)
    assert _tree(target) == expected


def test_lookup_misses_without_entry(project, memory_store):
    mgr = CacheManager(memory_store, project, os_id="Linux")
    assert mgr.lookup(CacheSpec(path="target", purpose="tests"), "tests") is None


def test_store_without_directory_is_a_noop(project, memory_store):
    mgr = CacheManager(memory_store, project, os_id="Linux")
    assert mgr.store(CacheSpec(path="target"), "tests") is None
    assert memory_store.entries == {}


def test_unreadable_entry_is_a_miss_and_leaves_destination(project, memory_store):
    target = _fill_target(project)
    before = _tree(target)
    mgr = CacheManager(memory_store, project, os_id="Linux")
    spec = CacheSpec(path="target")
    mgr.store(spec, "tests")
    handle = mgr.lookup(spec, "tests")

    memory_store.corrupt.add(handle.key)
    assert mgr.restore(handle) is False
    assert _tree(target) == before
    assert not list(project.glob(".target.restore-*"))


def test_failed_swap_keeps_previous_content(project, memory_store, monkeypatch):
    target = _fill_target(project)
    before = _tree(target)
    mgr = CacheManager(memory_store, project, os_id="Linux")
    spec = CacheSpec(path="target")
    mgr.store(spec, "tests")
    handle = mgr.lookup(spec, "tests")

    real_rename = Path.rename

    def rename(self, dest):
        if ".restore-" in self.name:
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_rename(self, dest)

    monkeypatch.setattr(Path, "rename", rename)
    assert mgr.restore(handle) is False
    assert _tree(target) == before
    assert not list(project.glob(".target.restore-*"))
    assert not list(project.glob(".target.old-*"))


def test_corrupt_archive_reads_as_miss(project, tmp_path):
    _fill_target(project)
    store = LocalCacheStore(tmp_path / "cache")
    mgr = CacheManager(store, project, os_id="Linux")
    spec = CacheSpec(path="target")
    key = mgr.store(spec, "tests")

    store.artifact_path(key).write_bytes(b"not a tarball")
    handle = mgr.lookup(spec, "tests")
    assert handle is not None
    assert mgr.restore(handle) is False
    with pytest.raises(CacheError):
        store.load(key, tmp_path / "out")


def test_entry_without_manifest_is_a_miss(project, tmp_path):
    _fill_target(project)
    store = LocalCacheStore(tmp_path / "cache")
    key = CacheManager(store, project, os_id="Linux").store(CacheSpec(path="target"), "tests")
    store.manifest_path(key).unlink()
    assert not store.contains(key)


def test_archive_with_escaping_paths_is_rejected(tmp_path):
    store = LocalCacheStore(tmp_path / "cache")
    evil = tmp_path / "evil.txt"
    evil.write_text("pwned")
    key = "tests-Linux-abc"
    with tarfile.open(store.artifact_path(key), "w:gz") as tar:
        tar.add(str(evil), arcname="../evil.txt")
    store.manifest_path(key).write_text('{"key": "tests-Linux-abc"}')

    with pytest.raises(CacheError):
        store.load(key, tmp_path / "out")


def test_prune_keeps_newest(project, tmp_path):
    src = _fill_target(project)
    store = LocalCacheStore(tmp_path / "cache")
    for i in range(4):
        store.save(f"tests-Linux-{i}", src)
        os.utime(store.artifact_path(f"tests-Linux-{i}"), (1000 + i, 1000 + i))
    store.save("clippy-Linux-0", src)

    removed = store.prune("tests-Linux-", keep=2)
    assert sorted(removed) == ["tests-Linux-0", "tests-Linux-1"]
    assert store.contains("tests-Linux-3")
    assert store.contains("clippy-Linux-0")


def test_memory_store_round_trip(project):
    target = _fill_target(project)
    store = MemoryCacheStore()
    mgr = CacheManager(store, project, os_id="Linux")
    spec = CacheSpec(path="target", purpose="clippy")
    mgr.store(spec, "clippy")
    expected = _tree(target)
    shutil.rmtree(target)
    assert mgr.restore(mgr.lookup(spec, "clippy"))
    assert _tree(target) == expected
