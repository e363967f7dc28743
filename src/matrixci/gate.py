# gate.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .model import DriftReport, Job, JobStatus


@dataclass
class PipelineResult:
    revision: str
    event: str
    status: JobStatus  # SUCCEEDED or FAILED
    jobs: List[Job] = field(default_factory=list)
    drift_report: Optional[DriftReport] = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def failed_jobs(self) -> List[Job]:
        return [j for j in self.jobs if j.status is JobStatus.FAILED]

    def skipped_jobs(self) -> List[Job]:
        return [j for j in self.jobs if j.status is JobStatus.SKIPPED]


def aggregate(
    jobs: List[Job],
    *,
    revision: str = "",
    event: str = "",
    drift_report: Optional[DriftReport] = None,
) -> PipelineResult:
    """
    The pipeline fails when any required job failed. Skipped jobs never fail
    it on their own; optional job failures are reported but ignored.
    """
    pending = [j.id for j in jobs if not j.terminal]
    if pending:
        raise ValueError(f"cannot aggregate: jobs not terminal: {pending}")

    failed = any(j.required and j.status is JobStatus.FAILED for j in jobs)
    return PipelineResult(
        revision=revision,
        event=event,
        status=JobStatus.FAILED if failed else JobStatus.SUCCEEDED,
        jobs=list(jobs),
        drift_report=drift_report,
    )
