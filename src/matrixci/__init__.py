from .dsl import sh, tool, target, platform, cross
from .config import PipelineConfig, CachePolicy, CodegenCheck, ImagePolicy, Platform, Tool
from .pipeline import Pipeline, Trigger, EventKind, run_pipeline
from .model import Job, JobKind, JobStatus, TargetSpec, Step

__all__ = [
    "sh", "tool", "target", "platform", "cross",
    "PipelineConfig", "CachePolicy", "CodegenCheck", "ImagePolicy", "Platform", "Tool",
    "Pipeline", "Trigger", "EventKind", "run_pipeline",
    "Job", "JobKind", "JobStatus", "TargetSpec", "Step",
]
