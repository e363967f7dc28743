# git.py
# Small, focused wrapper around the Git CLI.
# The rest of the codebase never calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()



def head_sha(cwd: Optional[str | Path] = None) -> str:
    """
    Full SHA of HEAD: the source revision a pipeline run is for.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    True when the working tree has modified, staged or untracked files.
    A dirty tree means the revision id alone does not describe the inputs.
    """
    return _git(["status", "--porcelain"], cwd=cwd) != ""
