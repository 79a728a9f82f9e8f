from .coordinator import RunCoordinator
from .dsl import build, job, matrix, on_pull_request, on_push, on_schedule, on_tag, pipeline, sh, wf, JobBuilder
from .loader import load_pipeline
from .model import Event, EventKind, JobDefinition, PipelineConfig, Step, TriggerRule
from .settings import Settings

__all__ = [
    "build",
    "job",
    "matrix",
    "on_pull_request",
    "on_push",
    "on_schedule",
    "on_tag",
    "pipeline",
    "sh",
    "wf",
    "JobBuilder",
    "load_pipeline",
    "RunCoordinator",
    "Event",
    "EventKind",
    "JobDefinition",
    "PipelineConfig",
    "Step",
    "TriggerRule",
    "Settings",
]
