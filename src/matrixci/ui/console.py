"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from matrixci.gate import PipelineResult
    from matrixci.model import Job


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, revision: str, event: str, job_count: int) -> None:
        """Print run start information."""
        self._out(
            "\nPIPELINE STARTED",
            f"Pipeline: {pipeline}",
            f"Revision: {revision}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, job_id: str) -> None:
        self._out(f"JOB STARTED: {job_id}")

    def print_phase(self, job_id: str, phase: str) -> None:
        self._out(f"[{job_id}] {phase}")

    def print_step(self, job_id: str, name: str) -> None:
        self._out(f"[{job_id}] ▶ {name}")

    def print_cache_hit(self, job_id: str, key: str) -> None:
        self._out(f"[{job_id}] CACHE: hit ({key})")

    def print_cache_miss(self, job_id: str, reason: str) -> None:
        self._out(f"[{job_id}] CACHE: miss ({reason})")

    def print_cache_saved(self, job_id: str, key: str) -> None:
        short_key = key[:40] + "..." if len(key) > 40 else key
        self._out(f"[{job_id}] CACHE: saved ({short_key})")

    def print_job_finished(self, job: "Job") -> None:
        """Print one line per terminal job."""
        status = job.status.value.upper()
        if job.reason:
            status = f"{status} ({job.reason})"
        duration = f" in {job.duration:.1f}s" if job.duration is not None else ""
        self._out(f"JOB {status}: {job.id}{duration}")
        if job.message and job.status.value == "failed":
            first = job.message.split("\n")[0]
            self._out(f"  Error: {first}" if not self.debug else f"  Error details: {job.message}")

    def print_plan(self, jobs: Iterable["Job"]) -> None:
        """Print the expanded job set."""
        self.print_header("PLAN")
        for job in jobs:
            extra = f" needs={job.needs}" if job.needs else ""
            self._out(f"  {job.id} [{job.kind.value}]{extra}")

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in result.jobs:
            status = job.status.value.upper()
            if job.reason:
                status = f"{status} ({job.reason})"
            lines.append(f"  {job.id}: {status}")
            for art in sorted(job.produced_artifacts, key=lambda a: a.name):
                lines.append(f"      artifact {art.name}: {art.location}")
        if result.drift_report is not None:
            lines.append(f"  drift: {'DETECTED' if result.drift_report.has_drift else 'none'}")
        lines.append("-" * 40)
        lines.append(f"PIPELINE: {result.status.value.upper()}")
        self._out(*lines)

    def print_warning(self, message: str) -> None:
        """Print a non-fatal warning."""
        self._out(f"WARNING: {message}", err=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
