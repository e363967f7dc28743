# images.py
from __future__ import annotations

import platform as _platform
from typing import Dict, List, Optional

from .config import ImagePolicy
from .errors import BuildError, PublishError
from .executor import JobRun
from .model import ArtifactRef, Job, JobStatus, Step
from .ui.console import get_console

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
}


def normalize_arch(arch: str) -> str:
    return _ARCH_ALIASES.get(arch.lower(), arch.lower())


def host_architecture() -> str:
    return normalize_arch(_platform.machine() or "amd64")


class ImagePublisher:
    """
    One image per architecture, then a single multi-arch manifest.

    Non-native architectures build under emulation (set up by the
    provisioner). The manifest is only assembled when every architecture
    image succeeded.
    """

    def __init__(self, policy: ImagePolicy, *, provisioner=None):
        self.policy = policy
        self.provisioner = provisioner
        self.native = normalize_arch(policy.native_architecture or host_architecture())

    def image_ref(self, tag: str, arch: Optional[str] = None) -> str:
        if arch is None:
            return f"{self.policy.repository}:{tag}"
        return f"{self.policy.repository}:{tag}-{arch}"

    def emulated(self, arch: str) -> bool:
        return normalize_arch(arch) != self.native

    def build_image(self, run: JobRun) -> None:
        job = run.job
        arch = job.target.cpu_architecture
        if self.provisioner is not None:
            self.provisioner.ensure(job, run)

        tag = run.variables.get("tag") or "latest"
        ref = self.image_ref(tag, arch)
        mode = "emulated" if self.emulated(arch) else "native"
        run.log.line(f"building {ref} ({mode})")

        run.sh(
            Step(name=f"Build image ({arch}, {mode})", run=self.policy.build),
            error=BuildError,
            extra={
                "arch": arch,
                "platform": f"{self.policy.operating_system}/{arch}",
                "image": ref,
            },
        )
        job.attach(ArtifactRef(job_id=job.id, name=f"image-{arch}", location=ref))

    def assemble_manifest(self, run: JobRun, image_jobs: List[Job]) -> None:
        """Refuses to publish a partial manifest."""
        job = run.job
        not_ok = [j.id for j in image_jobs if j.status is not JobStatus.SUCCEEDED]
        if not image_jobs:
            raise PublishError("no architecture images to assemble", job=job.id)
        if not_ok:
            raise PublishError(
                f"refusing to assemble manifest: architecture image(s) did not succeed: {not_ok}",
                job=job.id,
                details={"images": ", ".join(not_ok)},
            )
        if self.provisioner is not None:
            self.provisioner.ensure(job, run)

        sources: Dict[str, str] = {}
        for j in image_jobs:
            for art in j.produced_artifacts:
                if art.name.startswith("image-"):
                    sources[j.id] = art.location
        tag = run.variables.get("tag") or "latest"
        ref = self.image_ref(tag)

        run.sh(
            Step(name="Assemble multi-arch manifest", run=self.policy.manifest),
            error=PublishError,
            extra={"image": ref, "sources": " ".join(sources[j.id] for j in image_jobs if j.id in sources)},
        )
        job.attach(ArtifactRef(job_id=job.id, name="manifest", location=ref))
        get_console().print_info(f"[{job.id}] published {ref} ({', '.join(sorted(sources.values()))})")
