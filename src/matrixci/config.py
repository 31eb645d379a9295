# config.py
from __future__ import annotations

import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .dag import DependencyGraph
from .errors import ConfigError
from .model import Dependency, Job, Severity
from .triggers import VcsTrigger

DEFAULT_PIPELINE_FILE = "matrixci_pipeline.py"


@dataclass(frozen=True)
class FailureConditions:
    """Project-wide failure conditions, applied uniformly to every job."""
    nonzero_exit_code: bool = True
    error_message: bool = True
    error_severity: Severity = Severity.ERROR
    execution_timeout_min: float = 120

    @property
    def timeout_s(self) -> float:
        return self.execution_timeout_min * 60


@dataclass(frozen=True)
class ReleaseDefinition:
    configure: str
    deploys: Tuple[str, ...]
    publish: str
    version_parameter: str = "releaseVersion"


@dataclass(frozen=True)
class PipelineConfig:
    """
    Versioned, immutable pipeline definition.

    Loaded once per run and passed explicitly to the scheduler, runner and
    release gate.
    """
    project: str
    settings_version: str
    jobs: Tuple[Job, ...]
    edges: Tuple[Dependency, ...]
    order: Tuple[str, ...] = ()
    triggers: Dict[str, VcsTrigger] = field(default_factory=dict)
    release: Optional[ReleaseDefinition] = None
    conditions: FailureConditions = field(default_factory=FailureConditions)
    graph: DependencyGraph = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "graph", DependencyGraph(self.jobs, self.edges))
        for job_id in list(self.order) + list(self.triggers):
            if job_id not in self.graph.jobs:
                raise ConfigError(f"Unknown job '{job_id}' referenced in pipeline {self.project!r}")
        if self.release is not None:
            self._check_release(self.release)

    def _check_release(self, rel: ReleaseDefinition) -> None:
        for job_id in (rel.configure, rel.publish, *rel.deploys):
            if job_id not in self.graph.jobs:
                raise ConfigError(f"Release refers to unknown job '{job_id}'")
        if not rel.deploys:
            raise ConfigError("Release must declare at least one deploy job")
        closure = self.graph.closure([rel.publish])
        missing = [d for d in rel.deploys if d not in closure]
        if missing:
            raise ConfigError(f"Publish job '{rel.publish}' does not depend on deploy jobs {missing}")
        for d in rel.deploys:
            if rel.configure not in self.graph.closure([d]):
                raise ConfigError(f"Deploy job '{d}' does not depend on configure job '{rel.configure}'")

    def job(self, job_id: str) -> Job:
        try:
            return self.graph.jobs[job_id]
        except KeyError:
            raise ConfigError(f"Unknown job '{job_id}'. Known jobs: {sorted(self.graph.jobs)}") from None

    def ordered_jobs(self) -> List[Job]:
        """Jobs in display order: explicit order first, then the rest by id."""
        seen = list(self.order)
        rest = sorted(j for j in self.graph.jobs if j not in seen)
        return [self.graph.jobs[j] for j in seen + rest]

    def release_jobs(self) -> set:
        if self.release is None:
            return set()
        rel = self.release
        return {rel.configure, rel.publish, *rel.deploys}

    def default_targets(self) -> List[str]:
        """
        Jobs `matrixci run` builds when no target is given: triggered jobs if
        any, else every job outside the release sequence.
        """
        if self.triggers:
            return list(self.triggers)
        release = self.release_jobs()
        return [j.id for j in self.ordered_jobs() if j.id not in release]


def load_pipeline(path: str | Path) -> PipelineConfig:
    """
    Load a pipeline from a python file.

    The file must define either:
      - pipeline() -> Project | PipelineConfig
      - PIPELINE = Project | PipelineConfig
    """
    from .dsl import Project

    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix != ".py":
        raise ConfigError(f"Pipeline must be a .py file, got: {p.name}")

    globals_dict = runpy.run_path(str(p), run_name=f"matrixci_pipeline_{p.stem}")

    if callable(globals_dict.get("pipeline")):
        obj = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        obj = globals_dict["PIPELINE"]
    else:
        raise ConfigError(f"{p.name} must define pipeline() or PIPELINE")

    if isinstance(obj, Project):
        obj = obj.freeze()
    if not isinstance(obj, PipelineConfig):
        raise ConfigError(
            f"{p.name}: pipeline() must return a Project or PipelineConfig, got {type(obj).__name__}"
        )
    return obj
