# src/matrixci/dsl.py
from __future__ import annotations

from itertools import product
from typing import Dict, Iterable, List, Optional, Sequence

from .config import Platform, Tool
from .model import Step, TargetSpec


# ---------------------------------------------------------------------
# Step / tool helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=tuple(sorted((env or {}).items())))


def tool(
    name: str,
    version: str | None = None,
    *,
    install: str | None = None,
    version_args: Sequence[str] = ("--version",),
) -> Tool:
    return Tool(name=name, version=version, install=install, version_args=tuple(version_args))


# ---------------------------------------------------------------------
# Matrix rows
# ---------------------------------------------------------------------

def target(operating_system: str, cpu_architecture: str, *features: str) -> TargetSpec:
    """target("linux", "x86_64", "jemalloc")"""
    return TargetSpec(operating_system, cpu_architecture, tuple(features))


def platform(
    operating_system: str,
    cpu_architecture: str,
    *,
    triple: str | None = None,
    allowed_features: Optional[Iterable[str]] = None,
    setup: Iterable[Step] = (),
    tools: Iterable[Tool] = (),
) -> Platform:
    return Platform(
        operating_system=operating_system,
        cpu_architecture=cpu_architecture,
        triple=triple,
        allowed_features=tuple(allowed_features) if allowed_features is not None else None,
        setup=tuple(setup),
        tools=tuple(tools),
    )


def cross(
    operating_systems: Iterable[str],
    cpu_architectures: Iterable[str],
    feature_sets: Iterable[Sequence[str]] = ((),),
) -> List[TargetSpec]:
    """
    Cross-product matrix.

    Example:
        cross(["linux"], ["x86_64", "arm64"], [(), ("jemalloc",)])
    """
    return [
        TargetSpec(os_, arch, tuple(fs))
        for os_, arch, fs in product(list(operating_systems), list(cpu_architectures), list(feature_sets))
    ]
