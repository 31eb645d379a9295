from .dsl import Project, JobBuilder, sh, secret, vcs, matrix, equals, contains, no_less_than
from .config import FailureConditions, PipelineConfig, load_pipeline
from .model import FailureAction, Job, Platform, RunStatus, Step

__all__ = [
    "Project",
    "JobBuilder",
    "sh",
    "secret",
    "vcs",
    "matrix",
    "equals",
    "contains",
    "no_less_than",
    "FailureConditions",
    "PipelineConfig",
    "load_pipeline",
    "FailureAction",
    "Job",
    "Platform",
    "RunStatus",
    "Step",
]
