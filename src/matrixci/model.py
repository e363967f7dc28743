# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple


class JobKind(str, Enum):
    BUILD = "build"
    LINT = "lint"
    TEST = "test"
    CODEGEN_CHECK = "codegen-check"
    IMAGE = "image"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class JobPhase(str, Enum):
    """Sub-states of a running job, in the order the executor visits them."""
    PROVISIONING = "provisioning"
    CACHE_RESTORE = "cache_restore"
    BUILDING = "building"


_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED},
}


class InvalidTransition(ValueError):
    pass


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job. `run` may hold {placeholders}."""
    name: str
    run: str
    cwd: str | None = None
    env: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class TargetSpec:
    """One matrix row. Identity is the tuple value."""
    operating_system: str
    cpu_architecture: str
    feature_set: Tuple[str, ...] = ()

    @property
    def slug(self) -> str:
        base = f"{self.operating_system}-{self.cpu_architecture}"
        if self.feature_set:
            return f"{base}+{'+'.join(self.feature_set)}"
        return base


@dataclass(frozen=True)
class ArtifactRef:
    job_id: str
    name: str
    location: str


@dataclass(frozen=True)
class CacheEntry:
    key: str
    blob_ref: str
    created_at: datetime


@dataclass
class DriftReport:
    has_drift: bool
    diff_blob: Optional[ArtifactRef] = None
    changed_paths: List[str] = field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Job:
    """
    One independently schedulable unit of work.

    Status only moves forward (pending -> running -> succeeded|failed|skipped,
    or pending -> skipped). `needs` lists job ids that must be terminal before
    this job starts.
    """
    id: str
    kind: JobKind
    target: Optional[TargetSpec] = None
    required: bool = True
    timeout: float | None = None
    needs: list[str] = field(default_factory=list)

    status: JobStatus = JobStatus.PENDING
    phase: Optional[JobPhase] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    produced_artifacts: Set[ArtifactRef] = field(default_factory=set)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def _move(self, status: JobStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise InvalidTransition(f"job {self.id!r}: {self.status.value} -> {status.value} is not allowed")
        self.status = status

    def start(self) -> None:
        self._move(JobStatus.RUNNING)
        self.started_at = utcnow()

    def enter(self, phase: JobPhase) -> None:
        if self.status is not JobStatus.RUNNING:
            raise InvalidTransition(f"job {self.id!r} is {self.status.value}, cannot enter {phase.value}")
        self.phase = phase

    def succeed(self) -> None:
        self._move(JobStatus.SUCCEEDED)
        self.ended_at = utcnow()

    def fail(self, reason: str, message: str | None = None) -> None:
        self._move(JobStatus.FAILED)
        self.reason = reason
        self.message = message
        self.ended_at = utcnow()

    def skip(self, reason: str, message: str | None = None) -> None:
        self._move(JobStatus.SKIPPED)
        self.reason = reason
        self.message = message
        self.ended_at = utcnow()

    def attach(self, artifact: ArtifactRef) -> None:
        self.produced_artifacts.add(artifact)
