from .dsl import build, job, matrix, on_manual, on_push, on_schedule, sh, uses, wf, JobBuilder
from .engine import Engine
from .model import Event, Job, Step, WorkflowDefinition
from .settings import EngineConfig

__all__ = [
    "job",
    "sh",
    "uses",
    "matrix",
    "wf",
    "on_push",
    "on_schedule",
    "on_manual",
    "JobBuilder",
    "build",
    "Engine",
    "EngineConfig",
    "Event",
    "Job",
    "Step",
    "WorkflowDefinition",
]
