# matrix.py
from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Union

from .config import PipelineConfig, parse_target
from .errors import ConfigurationError
from .model import Job, JobKind, TargetSpec

MANIFEST_JOB_ID = "image:manifest"


def expand_targets(rows: Iterable[Union[TargetSpec, Mapping[str, Any]]]) -> List[TargetSpec]:
    """Validate rows and collapse duplicates, keeping first-seen order."""
    seen: set[TargetSpec] = set()
    out: List[TargetSpec] = []
    for i, row in enumerate(rows):
        spec = parse_target(row, i)
        if spec in seen:
            continue
        seen.add(spec)
        out.append(spec)
    return out


def _check_features(config: PipelineConfig, spec: TargetSpec) -> None:
    plat = config.platform_for(spec)
    if plat is None or plat.allowed_features is None:
        return
    bad = [f for f in spec.feature_set if f not in plat.allowed_features]
    if bad:
        raise ConfigurationError(
            f"features {bad} are not allowed on {spec.operating_system}/{spec.cpu_architecture}",
            details={"allowed": list(plat.allowed_features)},
        )


def expand_matrix(config: PipelineConfig, *, draft: bool = False) -> List[Job]:
    """
    Turn the declared matrix into the full job set.

    Pure: builds new Job objects every call. Draft runs get no image or
    codegen-check jobs.
    """
    specs = expand_targets(config.targets)
    for spec in specs:
        _check_features(config, spec)

    jobs: List[Job] = []
    for spec in specs:
        jobs.append(
            Job(
                id=f"build:{spec.slug}",
                kind=JobKind.BUILD,
                target=spec,
                timeout=config.timeout_for(JobKind.BUILD),
            )
        )

    if config.lint:
        jobs.append(Job(id="lint", kind=JobKind.LINT, timeout=config.timeout_for(JobKind.LINT)))
    if config.test:
        jobs.append(Job(id="test", kind=JobKind.TEST, timeout=config.timeout_for(JobKind.TEST)))

    if draft:
        return jobs

    if config.codegen is not None:
        jobs.append(
            Job(
                id="codegen-check",
                kind=JobKind.CODEGEN_CHECK,
                timeout=config.timeout_for(JobKind.CODEGEN_CHECK),
            )
        )

    if config.images is not None:
        image_ids: List[str] = []
        for arch in dict.fromkeys(config.images.architectures):
            spec = TargetSpec(config.images.operating_system, arch)
            job_id = f"image:{arch}"
            image_ids.append(job_id)
            jobs.append(
                Job(id=job_id, kind=JobKind.IMAGE, target=spec, timeout=config.timeout_for(JobKind.IMAGE))
            )
        if image_ids:
            jobs.append(
                Job(
                    id=MANIFEST_JOB_ID,
                    kind=JobKind.IMAGE,
                    needs=image_ids,
                    timeout=config.timeout_for(JobKind.IMAGE),
                )
            )

    return jobs
