# report.py
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from .gate import PipelineResult
from .model import Job


# -------------------- Schemas --------------------

class TargetReport(BaseModel):
    operating_system: str
    cpu_architecture: str
    feature_set: List[str] = Field(default_factory=list)


class ArtifactReport(BaseModel):
    name: str
    location: str


class JobReport(BaseModel):
    id: str
    kind: str
    target: Optional[TargetReport] = None
    required: bool
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_s: Optional[float] = None
    artifacts: List[ArtifactReport] = Field(default_factory=list)


class DriftSummary(BaseModel):
    has_drift: bool
    diff: Optional[ArtifactReport] = None
    changed_paths: List[str] = Field(default_factory=list)


class PipelineReport(BaseModel):
    revision: str
    event: str
    status: str
    exit_code: int
    jobs: List[JobReport]
    drift: Optional[DriftSummary] = None


# -------------------- Builders --------------------

def job_report(job: Job) -> JobReport:
    target = None
    if job.target is not None:
        target = TargetReport(
            operating_system=job.target.operating_system,
            cpu_architecture=job.target.cpu_architecture,
            feature_set=list(job.target.feature_set),
        )
    return JobReport(
        id=job.id,
        kind=job.kind.value,
        target=target,
        required=job.required,
        status=job.status.value,
        reason=job.reason,
        message=job.message,
        started_at=job.started_at,
        ended_at=job.ended_at,
        duration_s=job.duration,
        artifacts=[
            ArtifactReport(name=a.name, location=a.location)
            for a in sorted(job.produced_artifacts, key=lambda a: a.name)
        ],
    )


def build_report(result: PipelineResult) -> PipelineReport:
    drift = None
    if result.drift_report is not None:
        d = result.drift_report
        drift = DriftSummary(
            has_drift=d.has_drift,
            diff=ArtifactReport(name=d.diff_blob.name, location=d.diff_blob.location) if d.diff_blob else None,
            changed_paths=list(d.changed_paths),
        )
    return PipelineReport(
        revision=result.revision,
        event=result.event,
        status=result.status.value,
        exit_code=result.exit_code,
        jobs=[job_report(j) for j in result.jobs],
        drift=drift,
    )


def write_report(result: PipelineResult, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(build_report(result).model_dump_json(indent=2), encoding="utf-8")
    return p
