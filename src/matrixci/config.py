# config.py
from __future__ import annotations

import re
import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ConfigurationError
from .model import JobKind, Step, TargetSpec


# ---------------------------------------------------------------------
# Pipeline declaration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Tool:
    """
    An executable a job needs on the host.

    `version` is matched as a substring of the tool's version output.
    `install` runs when the tool is missing or mismatched; it may use
    {version}.
    """
    name: str
    version: str | None = None
    install: str | None = None
    version_args: Tuple[str, ...] = ("--version",)


@dataclass(frozen=True)
class Platform:
    """Per (os, arch) capabilities: cross target, allowed features, setup."""
    operating_system: str
    cpu_architecture: str
    triple: str | None = None
    allowed_features: Optional[Tuple[str, ...]] = None  # None -> any
    setup: Tuple[Step, ...] = ()
    tools: Tuple[Tool, ...] = ()

    def matches(self, target: TargetSpec) -> bool:
        return (
            self.operating_system == target.operating_system
            and self.cpu_architecture == target.cpu_architecture
        )


@dataclass(frozen=True)
class CachePolicy:
    lock_files: Tuple[str, ...] = ("**/Cargo.lock",)
    paths: Tuple[str, ...] = ("target/",)
    namespace: str = "cargo"
    host_os: str = "linux"  # OS used for jobs without a TargetSpec
    enabled: bool = True


@dataclass(frozen=True)
class CodegenCheck:
    """Generator writes into {output}; `paths` are the committed generated paths."""
    command: str
    paths: Tuple[str, ...]
    diff_name: str = "code-gen.diff"
    env: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ImagePolicy:
    repository: str
    architectures: Tuple[str, ...] = ("amd64", "arm64")
    build: str = "docker buildx build --platform {platform} -t {image} --push ."
    manifest: str = "docker buildx imagetools create -t {image} {sources}"
    emulation: str | None = "docker run --privileged --rm tonistiigi/binfmt --install {arch}"
    native_architecture: str | None = None  # None -> detect from host
    operating_system: str = "linux"
    tools: Tuple[Tool, ...] = (Tool("docker"),)


@dataclass
class PipelineConfig:
    name: str
    targets: List[Union[TargetSpec, Mapping[str, Any]]]
    build: List[Step]
    lint: List[Step] = field(default_factory=list)
    test: List[Step] = field(default_factory=list)
    platforms: List[Platform] = field(default_factory=list)
    toolchain: List[Tool] = field(default_factory=list)
    codegen_tool: Optional[Tool] = None
    artifacts: List[str] = field(default_factory=list)
    cache: CachePolicy = field(default_factory=CachePolicy)
    codegen: Optional[CodegenCheck] = None
    images: Optional[ImagePolicy] = None
    timeouts: Dict[JobKind, float] = field(default_factory=dict)
    default_timeout: float = 60 * 60
    fail_fast: Dict[JobKind, bool] = field(
        default_factory=lambda: {JobKind.BUILD: True, JobKind.IMAGE: True}
    )
    env: Dict[str, str] = field(default_factory=dict)

    def timeout_for(self, kind: JobKind) -> float:
        return float(self.timeouts.get(kind, self.default_timeout))

    def platform_for(self, target: TargetSpec | None) -> Platform | None:
        if target is None:
            return None
        for p in self.platforms:
            if p.matches(target):
                return p
        return None

    def steps_for(self, kind: JobKind) -> List[Step]:
        if kind is JobKind.BUILD:
            return self.build
        if kind is JobKind.LINT:
            return self.lint
        if kind is JobKind.TEST:
            return self.test
        return []


# ---------------------------------------------------------------------
# TargetSpec rows
# ---------------------------------------------------------------------

# '-' and '+' join the fields of job ids and cache keys, so they stay out of
# os/arch names and '+' stays out of feature names.
_NAME = re.compile(r"[A-Za-z0-9_.]+")
_FEATURE = re.compile(r"[A-Za-z0-9_.-]+")


class TargetRow(BaseModel):
    """Shape of a declarative matrix row."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    operating_system: str
    cpu_architecture: str
    feature_set: List[str] = []

    @field_validator("operating_system", "cpu_architecture")
    @classmethod
    def _plain_name(cls, v: str) -> str:
        if not _NAME.fullmatch(v):
            raise ValueError("must be non-empty and use only letters, digits, '_' and '.'")
        return v

    @field_validator("feature_set")
    @classmethod
    def _plain_features(cls, v: List[str]) -> List[str]:
        for f in v:
            if not _FEATURE.fullmatch(f):
                raise ValueError(f"feature {f!r} must be non-empty and use only letters, digits, '_', '.' and '-'")
        return v


def parse_target(row: Union[TargetSpec, Mapping[str, Any]], index: int = 0) -> TargetSpec:
    if isinstance(row, TargetSpec):
        data: Mapping[str, Any] = {
            "operating_system": row.operating_system,
            "cpu_architecture": row.cpu_architecture,
            "feature_set": list(row.feature_set),
        }
    elif isinstance(row, Mapping):
        data = row
    else:
        raise ConfigurationError(
            f"matrix row {index} must be a mapping or TargetSpec, got {type(row).__name__}",
        )

    try:
        parsed = TargetRow.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigurationError(
            f"malformed matrix row {index}",
            details={"row": dict(data), "problems": problems},
        ) from e

    # ordered set: keep first occurrence
    features: List[str] = []
    for f in parsed.feature_set:
        if f not in features:
            features.append(f)

    return TargetSpec(
        operating_system=parsed.operating_system,
        cpu_architecture=parsed.cpu_architecture,
        feature_set=tuple(features),
    )


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")


def render(template: str, variables: Mapping[str, str]) -> str:
    """Substitute known {name} placeholders; leave every other brace alone."""
    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name in variables:
            return str(variables[name])
        return m.group(0)

    return _PLACEHOLDER.sub(_sub, template)


# ---------------------------------------------------------------------
# Pipeline loading (local file)
# ---------------------------------------------------------------------

def load_pipeline(path: str | Path) -> PipelineConfig:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - pipeline() -> PipelineConfig
      - PIPELINE = PipelineConfig(...)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigurationError(f"Pipeline file not found: {p}")
    if p.suffix != ".py":
        raise ConfigurationError(f"Pipeline must be a .py file, got: {p.name}")

    globals_dict = runpy.run_path(str(p), run_name=f"matrixci_pipeline_{p.stem}")

    config = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        config = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        config = globals_dict["PIPELINE"]

    if not isinstance(config, PipelineConfig):
        raise ConfigurationError(
            "Pipeline file must return/define a PipelineConfig. "
            "Define pipeline() -> PipelineConfig or PIPELINE = PipelineConfig(...).",
            details={"path": str(p)},
        )
    return config
