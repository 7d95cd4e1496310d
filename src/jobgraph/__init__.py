from .dsl import job, sh, uses, matrix, pipeline, on_push, on_pull_request, JobBuilder, build
from .engine import Engine
from .loader import load_pipeline
from .model import Pipeline, JobTemplate, Step, RunContext, Run, Status, RunStatus

__all__ = [
    "job", "sh", "uses", "matrix", "pipeline", "on_push", "on_pull_request", "JobBuilder", "build",
    "Engine", "load_pipeline",
    "Pipeline", "JobTemplate", "Step", "RunContext", "Run", "Status", "RunStatus",
]
