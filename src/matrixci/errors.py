# errors.py
from __future__ import annotations

from dataclasses import dataclass, field

from .model import Problem


class PipelineError(Exception):
    """
    Base for runtime failures that end up on a run's problem list.

    Subclasses are dataclasses carrying enough context for:
      - clean CLI output
      - structured problems stored with the run
      - debugging without full tracebacks
    """

    job: str
    message: str

    @property
    def kind(self) -> str:
        return type(self).__name__

    def details(self) -> dict:
        return {}

    def to_problem(self) -> Problem:
        return Problem(kind=self.kind, message=self.message, job=self.job, step=getattr(self, "step", None))

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        step = getattr(self, "step", None)
        if step:
            lines.append(f"step={step}")
        for k, v in self.details().items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepExecutionError(PipelineError):
    job: str
    step: str
    message: str
    exit_code: int | None = None
    output: str = ""

    def details(self) -> dict:
        return {"exit_code": self.exit_code} if self.exit_code is not None else {}


@dataclass
class DependencyFailure(PipelineError):
    job: str
    upstream: str
    message: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"snapshot dependency failed: {self.upstream}"


@dataclass
class DependencyCancel(PipelineError):
    job: str
    upstream: str
    message: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"snapshot dependency canceled: {self.upstream}"


@dataclass
class TimeoutExceeded(PipelineError):
    job: str
    timeout_s: float
    step: str | None = None
    message: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"execution timeout of {self.timeout_s:g}s exceeded"


@dataclass
class AgentUnavailable(PipelineError):
    job: str
    requirements: list = field(default_factory=list)
    message: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            reqs = ", ".join(str(r) for r in self.requirements) or "none"
            self.message = f"no compatible agent (requirements: {reqs})"


@dataclass
class ParameterError(PipelineError):
    job: str
    message: str


@dataclass
class CanceledByUser(PipelineError):
    job: str
    message: str = "canceled before start"


class ConfigError(ValueError):
    """Invalid pipeline definition (duplicate ids, missing jobs, cycles...)."""


class GateError(RuntimeError):
    """Release gate transition not allowed from the current state."""
