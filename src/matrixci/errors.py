# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the job failure reason (`kind`)
      - debugging without full tracebacks
    """
    message: str
    job: str | None = None
    step: str | None = None
    details: dict = field(default_factory=dict)

    kind: ClassVar[str] = "CIError"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Malformed pipeline or matrix. Raised before any job starts."""
    kind = "ConfigurationError"


class ToolchainError(CIError):
    kind = "ToolchainError"


class BuildError(CIError):
    kind = "BuildError"


class GenerationError(CIError):
    """The code generator itself failed (not a content mismatch)."""
    kind = "GenerationError"


class DriftError(CIError):
    kind = "DriftError"


class JobTimeout(CIError):
    kind = "Timeout"


class CacheError(CIError):
    """Never fatal: callers downgrade it to a warning."""
    kind = "CacheError"


class PublishError(CIError):
    kind = "PublishError"


class Cancelled(CIError):
    kind = "Cancelled"


class ArtifactExistsError(CIError):
    kind = "ArtifactExists"
