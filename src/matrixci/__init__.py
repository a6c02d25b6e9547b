from .dsl import job, matrix, on_pull_request, on_push, pipeline, sh, uses
from .engine import evaluate, run
from .errors import GuardSkip, MatrixCIError, ResolutionError, SchemaError, StepFailure
from .executors import ActionExecutor, BoundStep, CancelToken, DryRunExecutor, ShellExecutor, StepExecutor, StepOutcome
from .loader import load_pipeline, loads_pipeline, parse_pipeline
from .model import JobInstance, JobResult, PipelineDefinition, PipelineResult, TriggerEvent
from .scheduler import run_pipeline, schedule
from .secrets import MappingSecretProvider, SecretProvider, SecretRef, SecretText

__all__ = [
    "job", "matrix", "on_pull_request", "on_push", "pipeline", "sh", "uses",
    "evaluate", "run", "run_pipeline", "schedule",
    "GuardSkip", "MatrixCIError", "ResolutionError", "SchemaError", "StepFailure",
    "ActionExecutor", "BoundStep", "CancelToken", "DryRunExecutor", "ShellExecutor", "StepExecutor", "StepOutcome",
    "load_pipeline", "loads_pipeline", "parse_pipeline",
    "JobInstance", "JobResult", "PipelineDefinition", "PipelineResult", "TriggerEvent",
    "MappingSecretProvider", "SecretProvider", "SecretRef", "SecretText",
]
