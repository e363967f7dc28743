# drift.py
from __future__ import annotations

import difflib
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .artifacts import ArtifactStore
from .config import CodegenCheck
from .errors import DriftError, GenerationError
from .executor import JobRun
from .model import DriftReport, Step
from .ui.console import get_console


@dataclass(frozen=True)
class FileDelta:
    path: str
    change: str  # "added" | "removed" | "modified"


def _collect(root: Path, paths: Sequence[str]) -> Dict[str, Path]:
    """Map repo-relative file path -> absolute path for every file under paths."""
    out: Dict[str, Path] = {}
    for rel in paths:
        p = root / rel
        if p.is_file():
            out[Path(rel).as_posix()] = p
        elif p.is_dir():
            for f in sorted(p.rglob("*")):
                if f.is_file():
                    out[f.relative_to(root).as_posix()] = f
    return out


def compare_trees(committed_root: Path, generated_root: Path, paths: Sequence[str]) -> List[FileDelta]:
    """Byte-for-byte comparison of the generated paths, path by path."""
    committed = _collect(committed_root, paths)
    generated = _collect(generated_root, paths)

    deltas: List[FileDelta] = []
    for rel in sorted(set(committed) | set(generated)):
        if rel not in committed:
            deltas.append(FileDelta(rel, "added"))
        elif rel not in generated:
            deltas.append(FileDelta(rel, "removed"))
        elif committed[rel].read_bytes() != generated[rel].read_bytes():
            deltas.append(FileDelta(rel, "modified"))
    return deltas


def _lines(path: Optional[Path]) -> Optional[List[str]]:
    if path is None:
        return []
    try:
        # newline="" keeps CRLF vs LF visible in the diff
        with path.open(encoding="utf-8", newline="") as f:
            return f.read().splitlines(keepends=True)
    except UnicodeDecodeError:
        return None


def unified_diff(committed_root: Path, generated_root: Path, deltas: Sequence[FileDelta]) -> str:
    """git-style unified diff from the committed tree (a/) to fresh output (b/)."""
    chunks: List[str] = []
    for d in deltas:
        old = committed_root / d.path if d.change != "added" else None
        new = generated_root / d.path if d.change != "removed" else None
        a_lines, b_lines = _lines(old), _lines(new)
        fromfile = f"a/{d.path}" if old is not None else "/dev/null"
        tofile = f"b/{d.path}" if new is not None else "/dev/null"

        chunks.append(f"diff --git a/{d.path} b/{d.path}\n")
        if a_lines is None or b_lines is None:
            chunks.append(f"Binary files {fromfile} and {tofile} differ\n")
            continue
        body = list(difflib.unified_diff(a_lines, b_lines, fromfile=fromfile, tofile=tofile))
        if not body:
            chunks.append(f"Files {fromfile} and {tofile} differ (line endings or encoding only)\n")
            continue
        for line in body:
            chunks.append(line if line.endswith("\n") else line + "\n\\ No newline at end of file\n")
    return "".join(chunks)


class DriftDetector:
    """
    Regenerates derived sources into a scratch directory and compares them
    with the committed tree.

    A generator failure is a GenerationError; a content mismatch is a
    DriftError with the unified diff attached. The two are never conflated.
    """

    def __init__(self, check: CodegenCheck, store: ArtifactStore, *, provisioner=None):
        self.check = check
        self.store = store
        self.provisioner = provisioner
        self.report: Optional[DriftReport] = None

    def detect(self, run: JobRun) -> DriftReport:
        scratch = Path(tempfile.mkdtemp(prefix="matrixci-codegen-"))
        try:
            step = Step(name="Generate code", run=self.check.command, env=self.check.env)
            run.sh(step, error=GenerationError, extra={"output": str(scratch)})

            deltas = compare_trees(run.repo_root, scratch, self.check.paths)
            if not deltas:
                return DriftReport(has_drift=False)

            diff = unified_diff(run.repo_root, scratch, deltas)
            ref = self.store.put_text(run.job.id, self.check.diff_name, diff)
            run.job.attach(ref)
            return DriftReport(has_drift=True, diff_blob=ref, changed_paths=[d.path for d in deltas])
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def work(self, run: JobRun) -> None:
        if self.provisioner is not None:
            self.provisioner.ensure(run.job, run)

        self.report = self.detect(run)
        if self.report.has_drift:
            for path in self.report.changed_paths:
                run.log.line(f"drift: {path}")
            get_console().print_info(
                f"[{run.job.id}] generated code differs from the committed tree "
                f"({len(self.report.changed_paths)} file(s)); diff at {self.report.diff_blob.location}"
            )
            raise DriftError(
                f"generated code is out of date in {len(self.report.changed_paths)} file(s)",
                job=run.job.id,
                details={"files": ", ".join(self.report.changed_paths)},
            )
