"""Tests for cache keys and the advisory cache."""
from pathlib import Path

import pytest

from conftest import SCENARIO_TARGETS, build_job, truncate_entry
from matrixci.cache import CacheManager, CacheStore, compute_cache_key, hash_lock_files
from matrixci.config import CachePolicy
from matrixci.errors import CacheError
from matrixci.model import Job, JobKind, TargetSpec

POLICY = CachePolicy(lock_files=("Cargo.lock",), paths=("target/",), namespace="cargo")


class TestCacheKey:

    def test_key_is_stable(self, repo: Path):
        job = build_job()
        keys = {compute_cache_key(job, POLICY, repo_root=repo).value for _ in range(3)}
        assert len(keys) == 1

    def test_same_target_same_key_across_jobs(self, repo: Path):
        a = build_job(SCENARIO_TARGETS[1])
        b = build_job(SCENARIO_TARGETS[1])
        assert compute_cache_key(a, POLICY, repo_root=repo) == compute_cache_key(b, POLICY, repo_root=repo)

    def test_architecture_and_features_separate_keys(self, repo: Path):
        keys = {
            compute_cache_key(build_job(spec), POLICY, repo_root=repo).value
            for spec in [
                TargetSpec("linux", "x86_64"),
                TargetSpec("linux", "x86_64", ("jemalloc",)),
                TargetSpec("linux", "arm64"),
            ]
        }
        assert len(keys) == 3

    def test_lint_and_test_share_key(self, repo: Path):
        lint = Job(id="lint", kind=JobKind.LINT)
        test = Job(id="test", kind=JobKind.TEST)
        assert compute_cache_key(lint, POLICY, repo_root=repo) == compute_cache_key(test, POLICY, repo_root=repo)

    def test_lock_change_changes_key(self, repo: Path):
        job = build_job()
        before = compute_cache_key(job, POLICY, repo_root=repo)
        (repo / "Cargo.lock").write_text("changed\n")
        assert compute_cache_key(job, POLICY, repo_root=repo) != before

    def test_unrelated_change_keeps_key(self, repo: Path):
        job = build_job()
        before = compute_cache_key(job, POLICY, repo_root=repo)
        (repo / "README.md").write_text("docs\n")
        assert compute_cache_key(job, POLICY, repo_root=repo) == before

    def test_glob_lock_files_sorted(self, repo: Path):
        (repo / "crates" / "a").mkdir(parents=True)
        (repo / "crates" / "a" / "Cargo.lock").write_text("a\n")
        digest, manifest = hash_lock_files(repo, ["**/Cargo.lock"])
        paths = [f[0] for f in manifest["files"]]
        assert paths == sorted(paths)
        assert "Cargo.lock" in paths and "crates/a/Cargo.lock" in paths


class TestCacheStore:

    def test_miss(self, cache_store: CacheStore, repo: Path):
        hit = cache_store.restore("nope", dest=repo)
        assert not hit.found
        assert hit.path is None

    def test_save_then_restore(self, cache_store: CacheStore, repo: Path):
        (repo / "target").mkdir()
        (repo / "target" / "lib.rlib").write_text("compiled")
        entry = cache_store.save("k1", ["target/"], repo_root=repo)
        assert Path(entry.blob_ref).exists()

        (repo / "target" / "lib.rlib").unlink()
        hit = cache_store.restore("k1", dest=repo)
        assert hit.found
        assert (repo / "target" / "lib.rlib").read_text() == "compiled"

    def test_last_writer_wins(self, cache_store: CacheStore, repo: Path):
        (repo / "target").mkdir()
        (repo / "target" / "x").write_text("one")
        cache_store.save("k", ["target/"], repo_root=repo)
        (repo / "target" / "x").write_text("two")
        cache_store.save("k", ["target/"], repo_root=repo)
        (repo / "target" / "x").unlink()
        cache_store.restore("k", dest=repo)
        assert (repo / "target" / "x").read_text() == "two"
        assert not list(cache_store.root.glob("*.tmp"))


class _BrokenStore(CacheStore):
    def save(self, key, paths, *, repo_root="."):
        raise CacheError("disk full", details={"key": key})

    def restore(self, key, *, dest="."):
        raise CacheError("corrupt archive", details={"key": key})


class TestCacheManager:

    def test_save_failure_is_advisory(self, tmp_path: Path, repo: Path):
        manager = CacheManager(_BrokenStore(tmp_path / "c"), POLICY)
        assert manager.save("k", repo_root=repo) is None

    def test_restore_failure_is_a_miss(self, tmp_path: Path, repo: Path):
        manager = CacheManager(_BrokenStore(tmp_path / "c"), POLICY)
        hit = manager.restore("k", dest=repo)
        assert not hit.found
        assert "corrupt archive" in hit.reason

    def test_corrupt_archive_is_a_miss(self, cache_store: CacheStore, repo: Path):
        cache_store.root.mkdir(parents=True)
        cache_store.artifact_path("bad").write_bytes(b"not a tarball")
        manager = CacheManager(cache_store, POLICY)
        assert not manager.restore("bad", dest=repo).found

    def test_truncated_archive_raises_cache_error(self, cache_store: CacheStore, repo: Path):
        truncate_entry(cache_store, repo, "half")
        with pytest.raises(CacheError, match="restore failed"):
            cache_store.restore("half", dest=repo)

    def test_truncated_archive_is_a_miss(self, cache_store: CacheStore, repo: Path):
        truncate_entry(cache_store, repo, "half")
        hit = CacheManager(cache_store, POLICY).restore("half", dest=repo)
        assert not hit.found
        assert "restore failed" in hit.reason

    def test_any_store_error_is_a_miss(self, tmp_path: Path, repo: Path):
        class Exploding(CacheStore):
            def restore(self, key, *, dest="."):
                raise EOFError("stream ended early")

        hit = CacheManager(Exploding(tmp_path / "c"), POLICY).restore("k", dest=repo)
        assert not hit.found
        assert "EOFError" in hit.reason
