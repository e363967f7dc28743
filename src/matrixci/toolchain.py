# toolchain.py
from __future__ import annotations

import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .config import PipelineConfig, Tool, render
from .errors import JobTimeout, ToolchainError
from .images import host_architecture, normalize_arch
from .model import Job, JobKind, Step

TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "protoc": "Install the protobuf compiler (protoc) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "go": "Install Go or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "make": "Install make or fix PATH.",
}


def _tool_version(tool: Tool) -> Optional[str]:
    """
    Best-effort version discovery. Whitespace is normalized so the text is
    stable enough to compare against a pin.
    """
    exe = shutil.which(tool.name)
    if exe is None:
        return None
    try:
        completed = subprocess.run(
            [exe, *tool.version_args],
            text=True,
            capture_output=True,
            check=False,
            timeout=60,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
    if completed.returncode != 0 or not text:
        return None
    return " ".join(text.split())


@dataclass
class Toolchain:
    """What a job was provisioned with: tool name -> version text."""
    tools: Dict[str, str] = field(default_factory=dict)
    setup: List[str] = field(default_factory=list)


Requirement = Union[Tool, Step]


class Provisioner:
    """
    Makes sure pinned tools, cross targets and per-platform setup are in
    place before a job's real work starts.

    Idempotent per host: each requirement is satisfied at most once, and a
    failure is remembered so every later job needing it fails the same way.
    """

    def __init__(self, config: PipelineConfig, *, native_architecture: str | None = None):
        self.config = config
        if native_architecture is None and config.images is not None:
            native_architecture = config.images.native_architecture
        self.native_architecture = normalize_arch(native_architecture or host_architecture())
        self._done: Dict[str, str] = {}
        self._failed: Dict[str, ToolchainError] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    # -- requirement resolution ------------------------------------------

    def requirements(self, job: Job, variables: Dict[str, str]) -> List[Tuple[str, Requirement]]:
        """(memo key, requirement) pairs for job, in install order."""
        reqs: List[Tuple[str, Requirement]] = []
        cfg = self.config

        if job.kind in (JobKind.BUILD, JobKind.LINT, JobKind.TEST):
            reqs.extend((f"tool:{t.name}", t) for t in cfg.toolchain)
            if cfg.codegen_tool is not None:
                reqs.append((f"tool:{cfg.codegen_tool.name}", cfg.codegen_tool))
        elif job.kind is JobKind.CODEGEN_CHECK and cfg.codegen_tool is not None:
            reqs.append((f"tool:{cfg.codegen_tool.name}", cfg.codegen_tool))
        elif job.kind is JobKind.IMAGE and cfg.images is not None:
            reqs.extend((f"tool:{t.name}", t) for t in cfg.images.tools)
            arch = job.target.cpu_architecture if job.target is not None else None
            if arch and cfg.images.emulation and normalize_arch(arch) != self.native_architecture:
                step = Step(name=f"Set up emulation ({arch})", run=cfg.images.emulation)
                reqs.append((f"setup:{render(step.run, variables)}", step))

        if job.kind is JobKind.BUILD:
            plat = cfg.platform_for(job.target)
            if plat is not None:
                reqs.extend((f"tool:{t.name}", t) for t in plat.tools)
                for step in plat.setup:
                    reqs.append((f"setup:{render(step.run, variables)}", step))

        seen = set()
        uniq = []
        for key, req in reqs:
            if key not in seen:
                seen.add(key)
                uniq.append((key, req))
        return uniq

    # -- provisioning ----------------------------------------------------

    def ensure(self, job: Job, run) -> Toolchain:
        """
        Provision everything job needs. Raises ToolchainError.

        `run` is the job's JobRun; install and setup commands execute inside
        its budget and land in its log.
        """
        toolchain = Toolchain()
        for key, req in self.requirements(job, run.variables):
            self._provide(key, req, run)
            if isinstance(req, Tool):
                toolchain.tools[req.name] = self._done[key]
            else:
                toolchain.setup.append(req.name)
        run.log.line(f"toolchain: {toolchain.tools or '-'} setup={toolchain.setup or '-'}")
        return toolchain

    def _provide(self, key: str, req: Requirement, run) -> None:
        # only jobs needing the same requirement wait for each other
        with self._lock:
            lock = self._locks.setdefault(key, threading.Lock())

        left = run.remaining()
        if not lock.acquire(timeout=-1 if left is None else max(left, 0)):
            raise JobTimeout(
                f"job exceeded its time budget of {run.job.timeout}s waiting for {key}",
                job=run.job.id,
            )
        try:
            if key in self._failed:
                prior = self._failed[key]
                raise ToolchainError(prior.message, job=run.job.id, step=prior.step, details=dict(prior.details))
            if key not in self._done:
                try:
                    self._done[key] = self._satisfy(req, run)
                except ToolchainError as e:
                    # a Timeout while installing is not remembered: it belongs to the job
                    self._failed[key] = e
                    raise
        finally:
            lock.release()

    def _satisfy(self, req: Requirement, run) -> str:
        if isinstance(req, Step):
            run.sh(req, error=ToolchainError)
            return "done"
        return self._ensure_tool(req, run)

    def _ensure_tool(self, t: Tool, run) -> str:
        found = _tool_version(t)
        if found is not None and (t.version is None or t.version in found):
            return found

        if t.install is None:
            hint = TOOL_HINTS.get(t.name, f"Install {t.name} or fix PATH.")
            if found is None:
                msg = f"{t.name} is not available"
            else:
                msg = f"{t.name} version mismatch: want {t.version!r}, found {found!r}"
            raise ToolchainError(msg, job=run.job.id, details={"tool": t.name, "hint": hint})

        run.sh(
            Step(name=f"Install {t.name}", run=t.install),
            error=ToolchainError,
            extra={"version": t.version or ""},
        )
        found = _tool_version(t)
        if found is None or (t.version is not None and t.version not in found):
            raise ToolchainError(
                f"{t.name} still unavailable after install (want {t.version!r}, found {found!r})",
                job=run.job.id,
                details={"tool": t.name},
            )
        return found
