"""Tests for the pipeline gate."""
import pytest

from matrixci.gate import aggregate
from matrixci.model import DriftReport, Job, JobKind, JobStatus


def _job(job_id, status, *, required=True, kind=JobKind.BUILD):
    job = Job(id=job_id, kind=kind, required=required)
    if status is JobStatus.SKIPPED:
        job.skip("Cancelled")
        return job
    job.start()
    if status is JobStatus.SUCCEEDED:
        job.succeed()
    elif status is JobStatus.FAILED:
        job.fail("BuildError")
    return job


def test_all_succeeded():
    result = aggregate([_job("a", JobStatus.SUCCEEDED), _job("lint", JobStatus.SUCCEEDED, kind=JobKind.LINT)])
    assert result.status is JobStatus.SUCCEEDED
    assert result.exit_code == 0


def test_required_failure_fails_pipeline():
    result = aggregate([_job("a", JobStatus.SUCCEEDED), _job("b", JobStatus.FAILED)])
    assert result.status is JobStatus.FAILED
    assert result.exit_code == 1
    assert [j.id for j in result.failed_jobs()] == ["b"]


def test_optional_failure_is_reported_not_fatal():
    result = aggregate([_job("a", JobStatus.SUCCEEDED), _job("img", JobStatus.FAILED, required=False)])
    assert result.succeeded
    assert [j.id for j in result.failed_jobs()] == ["img"]


def test_skipped_is_not_failed():
    result = aggregate([_job("a", JobStatus.SUCCEEDED), _job("b", JobStatus.SKIPPED)])
    assert result.succeeded
    assert [j.id for j in result.skipped_jobs()] == ["b"]
    assert not result.failed_jobs()


def test_non_terminal_jobs_rejected():
    with pytest.raises(ValueError):
        aggregate([Job(id="a", kind=JobKind.BUILD)])


def test_drift_report_carried():
    report = DriftReport(has_drift=False)
    result = aggregate([_job("a", JobStatus.SUCCEEDED)], revision="abc", event="pull-request", drift_report=report)
    assert result.drift_report is report
    assert result.revision == "abc"
