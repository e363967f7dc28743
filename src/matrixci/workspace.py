# workspace.py
from __future__ import annotations

import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .errors import BuildError

ALWAYS_EXCLUDED = (".git", ".matrixci")

_UNSAFE = re.compile(r"[^A-Za-z0-9._+-]")


def relative_to_root(path: str | Path, root: str | Path) -> Optional[str]:
    """Repo-relative posix path of path, or None when it lives elsewhere."""
    try:
        return Path(path).resolve().relative_to(Path(root).resolve()).as_posix()
    except ValueError:
        return None


class Workspace:
    """
    Private copy of the source tree for one job.

    Cached paths are left out of the copy, so a job starts from the sources
    plus whatever it restores from its own cache entry.
    """

    def __init__(
        self,
        source: str | Path,
        *,
        excludes: Sequence[str] = (),
        scratch_root: str | Path | None = None,
    ):
        self.source = Path(source).resolve()
        patterns = [p.strip().strip("/") for p in (*ALWAYS_EXCLUDED, *excludes)]
        self.excludes = [p for p in patterns if p and p != "."]
        self.scratch_root = scratch_root

    def _ignore(self, directory: str, names: List[str]) -> List[str]:
        rel_dir = Path(os.path.relpath(directory, self.source))
        ignored = []
        for name in names:
            rel = (rel_dir / name).as_posix()
            if any(fnmatch(rel, pat) for pat in self.excludes):
                ignored.append(name)
        return ignored

    def create(self, job_id: str) -> Path:
        """Copy the tree into a fresh scratch directory. Raises BuildError."""
        base = Path(tempfile.mkdtemp(prefix=f"matrixci-{_UNSAFE.sub('_', job_id)}-", dir=self.scratch_root))
        dest = base / "src"
        try:
            shutil.copytree(self.source, dest, symlinks=True, ignore=self._ignore)
        except OSError as e:
            shutil.rmtree(base, ignore_errors=True)
            raise BuildError(f"could not prepare job workspace: {e}", job=job_id) from e
        return dest

    @contextmanager
    def checkout(self, job_id: str) -> Iterator[Path]:
        path = self.create(job_id)
        try:
            yield path
        finally:
            shutil.rmtree(path.parent, ignore_errors=True)
