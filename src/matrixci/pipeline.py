# pipeline.py
from __future__ import annotations

import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .artifacts import DEFAULT_ARTIFACT_DIR, ArtifactStore
from .cache import DEFAULT_CACHE_DIR, CacheManager, CacheStore
from .config import PipelineConfig
from .drift import DriftDetector
from .errors import ConfigurationError
from .executor import BuildExecutor, JobRun, Work, run_job, target_variables
from .gate import PipelineResult, aggregate
from .images import ImagePublisher
from .matrix import expand_matrix
from .model import Job, JobKind, JobStatus
from .toolchain import Provisioner
from .workspace import Workspace, relative_to_root
from .ui.console import get_console


class EventKind(str, Enum):
    PUSH = "push-to-main"
    PULL_REQUEST = "pull-request"
    PULL_REQUEST_DRAFT = "pull-request-draft"


@dataclass(frozen=True)
class Trigger:
    revision: str
    event: EventKind = EventKind.PUSH

    @property
    def draft(self) -> bool:
        return self.event is EventKind.PULL_REQUEST_DRAFT


# ----------------------------------------------------------------------
# DAG build (dependency graph)
# ----------------------------------------------------------------------

def _build_graph(jobs: List[Job]) -> Tuple[Dict[str, Job], Dict[str, Set[str]], Dict[str, int]]:
    by_id: Dict[str, Job] = {}
    for j in jobs:
        if j.id in by_id:
            raise ConfigurationError(f"Duplicate job id: {j.id}")
        by_id[j.id] = j

    adj: Dict[str, Set[str]] = {jid: set() for jid in by_id}   # need -> dependents
    indeg: Dict[str, int] = {jid: 0 for jid in by_id}

    for j in jobs:
        for d in j.needs:
            if d not in by_id:
                raise ConfigurationError(f"Job '{j.id}' needs missing job '{d}'")
            adj[d].add(j.id)
            indeg[j.id] += 1

    return by_id, adj, indeg


# ----------------------------------------------------------------------
# Pipeline
# ----------------------------------------------------------------------

class Pipeline:
    """
    Expands the matrix, runs every job to a terminal state and hands the
    result to the gate.

    Jobs run concurrently on a thread pool; a job starts once everything in
    its `needs` is terminal. When a required job of a fail-fast class fails,
    jobs of that class that have not started yet are skipped. Running jobs
    are left to finish so nothing they write (cache entries included) is
    cut off halfway.
    """

    def __init__(
        self,
        config: PipelineConfig,
        trigger: Trigger,
        *,
        repo_root: str | Path = ".",
        cache_root: str | Path = DEFAULT_CACHE_DIR,
        artifact_root: str | Path = DEFAULT_ARTIFACT_DIR,
        max_workers: int | None = None,
        provisioner: Optional[Provisioner] = None,
        cache: Optional[CacheManager] = None,
        store: Optional[ArtifactStore] = None,
    ):
        self.config = config
        self.trigger = trigger
        self.repo_root = Path(repo_root).resolve()
        self.store = store or ArtifactStore(artifact_root)
        self.cache = cache or CacheManager(CacheStore(cache_root), config.cache)
        self.provisioner = provisioner or Provisioner(config)

        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers

        self.executor = BuildExecutor(
            config,
            provisioner=self.provisioner,
            cache=self.cache,
            store=self.store,
        )
        self.drift = (
            DriftDetector(config.codegen, self.store, provisioner=self.provisioner)
            if config.codegen is not None
            else None
        )
        self.publisher = (
            ImagePublisher(config.images, provisioner=self.provisioner)
            if config.images is not None
            else None
        )

        self.workspace = Workspace(self.repo_root, excludes=self._workspace_excludes())

        self._cancelled: Set[JobKind] = set()
        self._lock = threading.Lock()
        self._by_id: Dict[str, Job] = {}

    def _workspace_excludes(self) -> List[str]:
        excludes = list(self.config.cache.paths)
        for root in (self.store.root, self.cache.store.root):
            rel = relative_to_root(root, self.repo_root)
            if rel:
                excludes.append(rel)
        return excludes

    def plan(self) -> List[Job]:
        """The job set for this trigger. Pure: fresh Job objects every call."""
        return expand_matrix(self.config, draft=self.trigger.draft)

    # -- per job ---------------------------------------------------------

    def _work_for(self, job: Job) -> Work:
        if job.kind in (JobKind.BUILD, JobKind.LINT, JobKind.TEST):
            return self._isolated(self.executor.work)
        if job.kind is JobKind.CODEGEN_CHECK:
            return self.drift.work
        if job.kind is JobKind.IMAGE and job.target is not None:
            return self.publisher.build_image
        if job.kind is JobKind.IMAGE:
            needs = [self._by_id[n] for n in job.needs]
            return lambda run: self.publisher.assemble_manifest(run, needs)
        raise ConfigurationError(f"no executor for job kind {job.kind.value}")

    def _isolated(self, work: Work) -> Work:
        # build, lint and test write into their tree; each gets a private copy
        def _run(run: JobRun) -> None:
            with self.workspace.checkout(run.job.id) as path:
                run.repo_root = path
                run.log.line(f"workspace: {path}")
                work(run)
        return _run

    def _execute(self, job: Job) -> Job:
        with self._lock:
            cancelled = job.kind in self._cancelled and not job.needs
        if cancelled:
            job.skip("Cancelled", f"fail-fast: an earlier {job.kind.value} job failed")
            get_console().print_job_finished(job)
            return job

        run = JobRun(
            job=job,
            repo_root=self.repo_root,
            variables=target_variables(job, self.config, self.trigger.revision),
            env=dict(self.config.env),
        )
        run_job(job, run, self._work_for(job), self.store)
        self._note_failure(job)
        return job

    def _note_failure(self, job: Job) -> None:
        # marked from the worker so the next job on this thread already sees it
        if job.status is JobStatus.FAILED and job.required and self.config.fail_fast.get(job.kind, False):
            with self._lock:
                self._cancelled.add(job.kind)

    def _settle(self, fut: Future, job: Job) -> None:
        try:
            fut.result()
        except Exception as e:  # noqa: BLE001 - a scheduler bug must not hide other jobs
            get_console().print_exception(e)
            if job.status is JobStatus.PENDING:
                job.start()
            if job.status is JobStatus.RUNNING:
                job.fail("InternalError", str(e))
            self._note_failure(job)

    # -- public ----------------------------------------------------------

    def run(self, jobs: Optional[List[Job]] = None) -> PipelineResult:
        jobs = self.plan() if jobs is None else jobs
        by_id, adj, indeg = _build_graph(jobs)
        self._cancelled = set()
        if self.drift is not None:
            self.drift.report = None
        self._by_id = by_id
        order = {j.id: i for i, j in enumerate(jobs)}

        ready: List[str] = [j.id for j in jobs if indeg[j.id] == 0]
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # schedule everything currently ready
                while ready:
                    jid = ready.pop(0)
                    in_flight[pool.submit(self._execute, by_id[jid])] = jid

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    jid = in_flight.pop(fut)
                    self._settle(fut, by_id[jid])

                    # dependents start on any terminal outcome; they judge their needs themselves
                    for nxt in sorted(adj[jid], key=order.__getitem__):
                        indeg[nxt] -= 1
                        if indeg[nxt] == 0:
                            ready.append(nxt)

        drift_report = self.drift.report if self.drift is not None else None
        return aggregate(
            jobs,
            revision=self.trigger.revision,
            event=self.trigger.event.value,
            drift_report=drift_report,
        )


def run_pipeline(config: PipelineConfig, trigger: Trigger, **kwargs) -> PipelineResult:
    return Pipeline(config, trigger, **kwargs).run()
