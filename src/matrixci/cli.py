# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from matrixci import settings
from matrixci.cache import CacheManager, CacheStore
from matrixci.config import PipelineConfig, load_pipeline
from matrixci.errors import CIError, ConfigurationError
from matrixci.git_facts.git import head_sha, is_dirty
from matrixci.matrix import expand_matrix
from matrixci.model import JobKind
from matrixci.pipeline import EventKind, Pipeline, Trigger
from matrixci.report import write_report
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE = "matrixci_pipeline.py"


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.
    """
    files = []
    current_dir = Path(".")

    default = current_dir / DEFAULT_PIPELINE
    if default.exists():
        files.append(default)

    for path in current_dir.glob("*_pipeline.py"):
        if path != default:
            files.append(path)

    return sorted(files)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Pipeline file from the argument, MATRIXCI_PIPELINE, or discovery.

    Raises:
        SystemExit: If no single pipeline file can be chosen
    """
    console = get_console()
    pipeline_arg = pipeline_arg or settings.PIPELINE_FILE

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  matrixci run --pipeline my_pipeline.py",
            )
            sys.exit(2)
        return path

    files = find_pipeline_files()

    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", f"  {DEFAULT_PIPELINE}", "  *_pipeline.py"],
            suggestion=f"Create {DEFAULT_PIPELINE} or pass --pipeline.",
        )
        sys.exit(2)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=["\n".join(f"  {f}" for f in files)],
            suggestion=f"Specify one explicitly:\n  matrixci run --pipeline {DEFAULT_PIPELINE}",
        )
        sys.exit(2)

    return files[0]


def _resolve_revision(revision: str | None) -> str:
    if revision:
        return revision
    console = get_console()
    try:
        sha = head_sha()
        if is_dirty():
            console.print_warning("working tree is dirty; revision id does not cover local changes")
        return sha
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_warning("could not resolve git HEAD; using revision 'local'")
        return "local"


def _load(pipeline: str | None) -> tuple[Path, PipelineConfig]:
    path = discover_pipeline(pipeline)
    return path, load_pipeline(path)


def _config_error(ctx, e: ConfigurationError) -> None:
    console = get_console()
    details = [f"{k}: {v}" for k, v in e.details.items()]
    console.print_error("Invalid pipeline configuration", e.message, details=details or None)
    if ctx.obj.get("debug", False):
        console.print_exception(e)
    sys.exit(2)


pipeline_option = click.option(
    "--pipeline",
    default=None,
    help=f"Pipeline file path (defaults to {DEFAULT_PIPELINE} if present)",
)
event_option = click.option(
    "--event",
    type=click.Choice([e.value for e in EventKind]),
    default=EventKind.PUSH.value,
    show_default=True,
    help="Trigger event kind; draft pull requests skip image and drift jobs",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: build-matrix, lint/test and code-generation drift orchestrator."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@pipeline_option
@event_option
@click.option("--revision", default=None, help="Source revision (defaults to git HEAD)")
@click.option(
    "--workers",
    default=None,
    type=click.IntRange(min=1),
    envvar="MATRIXCI_MAX_WORKERS",
    help="Number of parallel workers (default: cpu count - 1)",
)
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--artifact-dir", default=settings.ARTIFACT_DIR, show_default=True, help="Artifact directory")
@click.option("--report", "report_path", default=None, help="JSON report path (default: <artifact-dir>/report.json)")
@click.pass_context
def run(ctx, pipeline, event, revision, workers, cache_dir, artifact_dir, report_path):
    """Run the pipeline for one revision."""
    console = get_console()

    try:
        path, config = _load(pipeline)
        trigger = Trigger(revision=_resolve_revision(revision), event=EventKind(event))
        runner = Pipeline(
            config,
            trigger,
            repo_root=".",
            cache_root=cache_dir,
            artifact_root=artifact_dir,
            max_workers=workers,
        )
        jobs = runner.plan()

        console.print_run_started(
            pipeline=f"{config.name} ({path.name})",
            revision=trigger.revision,
            event=trigger.event.value,
            job_count=len(jobs),
        )

        result = runner.run(jobs)
        console.print_results(result)

        out = write_report(result, report_path or Path(artifact_dir) / "report.json")
        console.print_info(f"Report: {out}")

        sys.exit(result.exit_code)

    except ConfigurationError as e:
        _config_error(ctx, e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CIError as e:
        console.print_error(e.kind, e.message, details=[f"{k}: {v}" for k, v in e.details.items()] or None)
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@pipeline_option
@event_option
@click.pass_context
def plan(ctx, pipeline, event):
    """Print the job set without running anything."""
    console = get_console()
    try:
        _path, config = _load(pipeline)
        console.print_plan(expand_matrix(config, draft=Trigger("plan", EventKind(event)).draft))
    except ConfigurationError as e:
        _config_error(ctx, e)


@cli.command("cache-key")
@pipeline_option
@click.pass_context
def cache_key(ctx, pipeline):
    """Print the cache key of every cacheable job."""
    console = get_console()
    try:
        _path, config = _load(pipeline)
        manager = CacheManager(CacheStore(settings.CACHE_DIR), config.cache)
        for job in expand_matrix(config):
            if job.kind in (JobKind.BUILD, JobKind.LINT, JobKind.TEST):
                console.print_info(f"{job.id}: {manager.key_for(job, '.')}")
    except ConfigurationError as e:
        _config_error(ctx, e)


if __name__ == "__main__":
    cli()
