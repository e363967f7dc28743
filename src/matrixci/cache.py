# cache.py
from __future__ import annotations

import hashlib
import json
import re
import tarfile
import time
import uuid
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import CachePolicy
from .errors import CacheError
from .model import CacheEntry, Job, JobKind
from .ui.console import get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Job-class caching:
#   cache_key = namespace-os[-arch+features]-sha256(lock files)
#
# Build jobs key on architecture and features because compiled output is
# specific to both. Lint and test have no target and share one key per
# host OS.
#
# Cache artifact:
#   a tar.gz containing the declared cache paths plus a manifest.json.
#
# Concurrent saves to one key are last-writer-wins: each writer builds a
# private temp file and renames it into place.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/*",
    ".matrixci/*",
    "*/__pycache__/*",
    "*.pyc",
    "*/.DS_Store",
]

_KEY_UNSAFE = re.compile(r"[^A-Za-z0-9._+-]")


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


def _matches_any_glob(rel: str, globs: Sequence[str]) -> bool:
    return any(fnmatch(rel, g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete files.
    Supports:
      - file path: "Cargo.lock"
      - glob:      "**/Cargo.lock"
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
        out.extend(m for m in sorted(repo_root.glob(pat)) if m.is_file())

    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_lock_files(
    repo_root: str | Path,
    patterns: Sequence[str],
    *,
    excludes: Optional[Sequence[str]] = None,
) -> Tuple[str, Dict]:
    """
    Hash the dependency lock description deterministically:
      - relative path and content digest of every matching file
      - sorted by relative path
    Returns (digest, manifest_bits).
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    files: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        rel = _relpath(p, root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        files.append((rel, _hash_file_contents(p)))

    files.sort(key=lambda t: t[0])
    payload = {"v": 1, "files": files}
    return _sha256_str(_json_dumps_stable(payload)), payload


@dataclass(frozen=True)
class CacheKey:
    namespace: str
    operating_system: str
    platform: str
    lock_digest: str

    @property
    def value(self) -> str:
        parts = [self.namespace, self.operating_system]
        if self.platform:
            parts.append(self.platform)
        parts.append(self.lock_digest[:32])
        return _KEY_UNSAFE.sub("_", "-".join(parts))

    def __str__(self) -> str:
        return self.value


def compute_cache_key(job: Job, policy: CachePolicy, *, repo_root: str | Path = ".") -> CacheKey:
    """
    Pure function of the job's target and the lock file contents.
    """
    digest, _manifest = hash_lock_files(repo_root, policy.lock_files)

    if job.target is not None and job.kind is JobKind.BUILD:
        t = job.target
        platform = t.cpu_architecture
        if t.feature_set:
            platform = f"{platform}+{'+'.join(t.feature_set)}"
        return CacheKey(policy.namespace, t.operating_system, platform, digest)

    os_ = job.target.operating_system if job.target is not None else policy.host_os
    return CacheKey(policy.namespace, os_, "", digest)


# ---------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheHit:
    found: bool
    key: str
    path: Optional[Path]
    reason: str  # human readable


def _tar_add_path(tar: tarfile.TarFile, repo_root: Path, src: Path, *, exclude_globs: List[str]) -> int:
    """Add src (file/dir) into tar by repo-relative path. Returns files added."""
    src = src.resolve()
    if not src.exists():
        return 0

    files = [src] if src.is_file() else list(_iter_files_under(src))
    added = 0
    for f in files:
        rel = _relpath(f, repo_root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)
        added += 1
    return added


class CacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz
        <key>.manifest.json
    Eviction is left to whatever manages the directory.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def entry(self, key: str) -> Optional[CacheEntry]:
        art = self.artifact_path(key)
        if not art.exists():
            return None
        created = datetime.fromtimestamp(art.stat().st_mtime, tz=timezone.utc)
        return CacheEntry(key=key, blob_ref=str(art), created_at=created)

    def restore(self, key: str, *, dest: str | Path = ".") -> CacheHit:
        """
        Extract the entry for key into dest ("overwrite by extraction").
        Raises CacheError when an entry exists but cannot be read.
        """
        art = self.artifact_path(key)
        if not art.exists():
            return CacheHit(found=False, key=key, path=None, reason="cache miss")

        # truncated gzip streams surface as EOFError or zlib.error mid-extraction;
        # older 3.10/3.11 patch releases reject filter= with TypeError
        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                tar.extractall(path=str(Path(dest).resolve()), filter="data")
        except (OSError, EOFError, zlib.error, tarfile.TarError, ValueError, TypeError) as e:
            raise CacheError(f"cache entry exists but restore failed: {e}", details={"key": key}) from e

        return CacheHit(found=True, key=key, path=art, reason="cache hit: restored artifact")

    def save(self, key: str, paths: Sequence[str], *, repo_root: str | Path = ".") -> CacheEntry:
        """
        Persist repo-relative paths as the entry for key.
        Raises CacheError on any storage failure.
        """
        root = Path(repo_root).resolve()
        art = self.artifact_path(key)
        tmp = art.with_name(f".{art.name}.{uuid.uuid4().hex}.tmp")
        manifest = {"key": key, "paths": list(paths), "saved_at_unix": int(time.time())}

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                count = 0
                for entry in paths:
                    count += _tar_add_path(tar, root, root / entry, exclude_globs=DEFAULT_CACHE_EXCLUDES)
                manifest["files"] = count
            tmp.replace(art)
            self.manifest_path(key).write_text(
                json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8"
            )
        except (OSError, tarfile.TarError, ValueError) as e:
            raise CacheError(f"cache save failed: {e}", details={"key": key}) from e
        finally:
            tmp.unlink(missing_ok=True)

        return CacheEntry(key=key, blob_ref=str(art), created_at=datetime.now(timezone.utc))


class CacheManager:
    """
    Advisory cache: a failing restore counts as a miss and a failing save
    only prints a warning. Neither ever fails the owning job.
    """

    def __init__(self, store: CacheStore, policy: CachePolicy):
        self.store = store
        self.policy = policy

    def key_for(self, job: Job, repo_root: str | Path) -> CacheKey:
        return compute_cache_key(job, self.policy, repo_root=repo_root)

    def restore(self, key: CacheKey | str, *, dest: str | Path = ".") -> CacheHit:
        k = str(key)
        try:
            return self.store.restore(k, dest=dest)
        except Exception as e:  # noqa: BLE001 - restore is advisory
            msg = e.message if isinstance(e, CacheError) else f"{type(e).__name__}: {e}"
            get_console().print_warning(f"cache: {msg} (treated as miss)")
            return CacheHit(found=False, key=k, path=None, reason=f"restore failed: {msg}")

    def save(self, key: CacheKey | str, *, repo_root: str | Path = ".") -> Optional[CacheEntry]:
        k = str(key)
        try:
            return self.store.save(k, self.policy.paths, repo_root=repo_root)
        except (CacheError, OSError) as e:
            msg = e.message if isinstance(e, CacheError) else str(e)
            get_console().print_warning(f"cache: {msg} (continuing without cache)")
            return None
