# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Type

from .artifacts import ArtifactStore
from .cache import CacheManager
from .config import PipelineConfig, render
from .errors import BuildError, CIError, JobTimeout
from .model import Job, JobKind, JobPhase, JobStatus, Step, utcnow
from .ui.console import get_console

OUTPUT_TAIL = 4000


# ----------------------------------------------------------------------
# Per-job log
# ----------------------------------------------------------------------

class JobLog:
    """Timestamped lines plus raw command output, flushed as `<job>.log`."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._chunks: List[str] = []
        self._lock = threading.Lock()

    def line(self, text: str) -> None:
        stamp = utcnow().strftime("%H:%M:%S")
        with self._lock:
            self._chunks.append(f"[{stamp}] {text}\n")

    def output(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._chunks.append(text if text.endswith("\n") else text + "\n")

    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _kill(proc: subprocess.Popen) -> None:
    # the shell runs in its own session; take its children down with it
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except ProcessLookupError:
            return
    proc.kill()


def target_variables(job: Job, config: PipelineConfig, revision: str = "") -> Dict[str, str]:
    """Template variables a job's commands may use."""
    variables = {"revision": revision, "tag": revision[:12]}
    if job.target is not None:
        t = job.target
        plat = config.platform_for(t)
        variables.update(
            {
                "os": t.operating_system,
                "arch": t.cpu_architecture,
                "features": ",".join(t.feature_set),
                "triple": (plat.triple if plat and plat.triple else t.cpu_architecture),
            }
        )
    return variables


@dataclass
class JobRun:
    """
    Execution context of one job: owns its log and its wall-clock budget.
    """
    job: Job
    repo_root: Path
    variables: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    log: JobLog = None  # type: ignore[assignment]
    deadline: float | None = None

    def __post_init__(self) -> None:
        if self.log is None:
            self.log = JobLog(self.job.id)
        if self.deadline is None and self.job.timeout is not None:
            self.deadline = time.monotonic() + self.job.timeout

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def check_budget(self) -> None:
        left = self.remaining()
        if left is not None and left <= 0:
            raise JobTimeout(
                f"job exceeded its time budget of {self.job.timeout}s",
                job=self.job.id,
            )

    def sh(
        self,
        step: Step,
        *,
        error: Type[CIError] = BuildError,
        extra: Optional[Mapping[str, str]] = None,
    ) -> str:
        """
        Run one step in a shell, bounded by the job budget.

        Returns combined stdout/stderr. Non-zero exit raises `error`; running
        out of budget kills the process group and raises JobTimeout with the
        partial output already in the log.
        """
        self.check_budget()
        variables = dict(self.variables)
        if extra:
            variables.update(extra)

        cmd = render(step.run, variables)
        cwd = (self.repo_root / render(step.cwd or ".", variables)).resolve()
        if not cwd.exists():
            raise error(f"working directory not found: {cwd}", job=self.job.id, step=step.name)

        env = os.environ.copy()
        env.update(self.env)
        env.update({k: render(v, variables) for k, v in step.env})

        get_console().print_step(self.job.id, step.name)
        self.log.line(f"$ {cmd}")

        try:
            proc = subprocess.Popen(
                cmd,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise error(f"could not start command: {e}", job=self.job.id, step=step.name) from e

        try:
            out, _ = proc.communicate(timeout=self.remaining())
        except subprocess.TimeoutExpired:
            _kill(proc)
            out, _ = proc.communicate()
            self.log.output(out or "")
            self.log.line(f"killed: budget of {self.job.timeout}s exhausted")
            raise JobTimeout(
                f"job exceeded its time budget of {self.job.timeout}s",
                job=self.job.id,
                step=step.name,
            )

        self.log.output(out or "")
        if proc.returncode != 0:
            self.log.line(f"exit={proc.returncode}")
            raise error(
                f"step '{step.name}' failed (exit={proc.returncode}): {cmd}",
                job=self.job.id,
                step=step.name,
                details={"exit_code": proc.returncode, "output": (out or "")[-OUTPUT_TAIL:]},
            )
        return out or ""


Work = Callable[[JobRun], None]


def run_job(job: Job, run: JobRun, work: Work, store: ArtifactStore) -> Job:
    """
    Drive one job to a terminal state.

    Job-local errors become the job's failure reason and never propagate.
    The log is flushed to the artifact store whatever the outcome.
    """
    console = get_console()
    job.start()
    console.print_job_start(job.id)
    run.log.line(f"job {job.id} started")

    try:
        work(run)
    except CIError as e:
        run.log.line(str(e))
        job.fail(e.kind, e.message)
    except Exception as e:  # noqa: BLE001 - job isolation boundary
        run.log.line(f"internal error: {e!r}")
        job.fail("InternalError", str(e))
    else:
        job.succeed()
    finally:
        if job.status is JobStatus.RUNNING:
            job.fail("InternalError", "job did not reach a terminal state")
        run.log.line(f"job {job.id} {job.status.value}")
        try:
            job.attach(store.put_text(job.id, f"{job.id}.log", run.log.text()))
        except (CIError, OSError) as e:
            console.print_warning(f"[{job.id}] could not store log: {e}")

    console.print_job_finished(job)
    return job


# ----------------------------------------------------------------------
# Build executor
# ----------------------------------------------------------------------

class BuildExecutor:
    """
    Per job: provisioning -> cache_restore -> building -> {succeeded, failed}.

    Used for build, lint and test jobs. All phases are sequential within a
    job; jobs share nothing except the cache.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        provisioner,
        cache: CacheManager | None,
        store: ArtifactStore,
    ):
        self.config = config
        self.provisioner = provisioner
        self.cache = cache
        self.store = store

    def _phase(self, run: JobRun, phase: JobPhase) -> None:
        run.check_budget()
        run.job.enter(phase)
        run.log.line(f"phase: {phase.value}")
        get_console().print_phase(run.job.id, phase.value)

    def work(self, run: JobRun) -> None:
        job = run.job
        console = get_console()

        self._phase(run, JobPhase.PROVISIONING)
        self.provisioner.ensure(job, run)

        key = None
        if self.cache is not None and self.config.cache.enabled:
            self._phase(run, JobPhase.CACHE_RESTORE)
            key = self.cache.key_for(job, run.repo_root)
            hit = self.cache.restore(key, dest=run.repo_root)
            run.log.line(f"cache {key}: {hit.reason}")
            if hit.found:
                console.print_cache_hit(job.id, str(key))
            else:
                console.print_cache_miss(job.id, hit.reason)

        self._phase(run, JobPhase.BUILDING)
        for step in self.config.steps_for(job.kind):
            run.sh(step, error=BuildError)

        if job.kind is JobKind.BUILD:
            self._collect_outputs(run)

        if key is not None:
            run.check_budget()
            if self.cache.save(key, repo_root=run.repo_root) is not None:
                console.print_cache_saved(job.id, str(key))
                run.log.line(f"cache {key}: saved")

    def _collect_outputs(self, run: JobRun) -> None:
        for template in self.config.artifacts:
            rel = render(template, run.variables)
            path = run.repo_root / rel
            if not path.is_file():
                raise BuildError(f"declared build output missing: {rel}", job=run.job.id)
            run.job.attach(self.store.put_file(run.job.id, Path(rel).name, path))
