# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union


class Platform(str, Enum):
    """Target platforms. Values are the OS names agents report."""
    WINDOWS = "Windows"
    LINUX = "Linux"
    MACOS = "Mac OS X"

    @property
    def short(self) -> str:
        # "Mac OS X" -> "Mac", used in job ids
        return self.value.split(" ")[0]


class JobType(str, Enum):
    REGULAR = "regular"
    COMPOSITE = "composite"
    DEPLOYMENT = "deployment"


class DependencyKind(str, Enum):
    SNAPSHOT = "snapshot"
    ARTIFACT = "artifact"


class FailureAction(str, Enum):
    """What a dependent does when an upstream run failed or was canceled."""
    ADD_PROBLEM = "add-problem"
    CANCEL = "cancel"
    FAIL_TO_START = "fail-to-start"
    IGNORE = "ignore"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED)


class Severity(int, Enum):
    INFO = 10
    WARNING = 20
    ERROR = 30


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class SecretRef:
    """Opaque credential reference, e.g. ``credentialsJSON:9a48...``."""
    ref: str

    def __str__(self) -> str:
        return "******"


ParamValue = Union[str, SecretRef]


@dataclass(frozen=True)
class Requirement:
    """Predicate over an agent capability."""
    name: str
    op: str
    value: str = ""

    OPS = ("equals", "contains", "no-less-than", "exists")

    def __post_init__(self) -> None:
        if self.op not in self.OPS:
            raise ValueError(f"Unknown requirement operator {self.op!r}, expected one of {self.OPS}")

    def matches(self, capabilities: Dict[str, str]) -> bool:
        actual = capabilities.get(self.name)
        if actual is None:
            return False
        if self.op == "exists":
            return True
        if self.op == "equals":
            return actual == self.value
        if self.op == "contains":
            return self.value in actual
        try:
            return float(actual) >= float(self.value)
        except ValueError:
            return False

    def __str__(self) -> str:
        if self.op == "exists":
            return f"{self.name} exists"
        return f"{self.name} {self.op} {self.value!r}"


@dataclass(frozen=True)
class ArtifactRule:
    """One line of an artifact rule set: ``+:<source>=><target>`` or ``-:<source>``."""
    source: str
    target: str = ""
    include: bool = True

    @classmethod
    def parse(cls, line: str) -> "ArtifactRule":
        text = line.strip()
        include = True
        if text.startswith("+:"):
            text = text[2:]
        elif text.startswith("-:"):
            include = False
            text = text[2:]
        source, sep, target = text.partition("=>")
        source = source.strip()
        if not source:
            raise ValueError(f"Artifact rule has an empty source: {line!r}")
        if not include and sep:
            raise ValueError(f"Exclusion rule cannot have a target: {line!r}")
        return cls(source=source, target=target.strip().strip("/"), include=include)

    def __str__(self) -> str:
        if not self.include:
            return f"-:{self.source}"
        return f"+:{self.source}=>{self.target}" if self.target else f"+:{self.source}"


def parse_artifact_rules(text: str | None) -> Tuple[ArtifactRule, ...]:
    """Parse a newline (or comma) separated rule set."""
    if not text:
        return ()
    lines: List[str] = []
    for raw in text.splitlines():
        lines.extend(part for part in raw.split(",") if part.strip())
    return tuple(ArtifactRule.parse(line) for line in lines)


@dataclass(frozen=True)
class Job:
    """
    A build configuration: steps + requirements + parameters.

    Composite jobs carry no steps; their status is an aggregate of their
    dependencies.
    """
    id: str
    name: str
    type: JobType = JobType.REGULAR
    platform: Optional[Platform] = None
    steps: Tuple[Step, ...] = ()
    artifact_rules: Tuple[ArtifactRule, ...] = ()
    requirements: Tuple[Requirement, ...] = ()
    params: Mapping[str, ParamValue] = field(default_factory=dict, hash=False)
    build_number_pattern: str = "%build.counter%"
    max_running: Optional[int] = None
    clean_checkout: bool = False

    def __post_init__(self):
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def is_composite(self) -> bool:
        return self.type is JobType.COMPOSITE

    @property
    def secret_params(self) -> Dict[str, SecretRef]:
        return {k: v for k, v in self.params.items() if isinstance(v, SecretRef)}


@dataclass(frozen=True)
class Dependency:
    """
    Edge ``source -> target``: ``target`` depends on ``source``.

    Failure and cancellation policies only apply to snapshot edges.
    """
    source: str
    target: str
    kind: DependencyKind = DependencyKind.SNAPSHOT
    on_failure: FailureAction = FailureAction.ADD_PROBLEM
    on_cancel: FailureAction = FailureAction.CANCEL
    artifact_rules: Tuple[ArtifactRule, ...] = ()


@dataclass(frozen=True)
class Problem:
    kind: str
    message: str
    job: str
    step: str | None = None

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "job": self.job, "step": self.step}

    @classmethod
    def from_dict(cls, data: dict) -> "Problem":
        return cls(kind=data["kind"], message=data["message"], job=data["job"], step=data.get("step"))


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Run:
    """One execution of a job."""
    job_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.QUEUED
    build_number: str | None = None
    counter: int | None = None
    agent: str | None = None
    artifacts: List[str] = field(default_factory=list)
    problems: List[Problem] = field(default_factory=list)
    params: Dict[str, str] = field(default_factory=dict)
    queued_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def start(self, agent: str | None = None) -> None:
        self.status = RunStatus.RUNNING
        self.agent = agent
        self.started_at = _now()

    def finish(self, status: RunStatus) -> None:
        if not status.is_terminal:
            raise ValueError(f"Run cannot finish with non-terminal status {status.value}")
        self.status = status
        self.finished_at = _now()

    def add_problem(self, problem: Problem) -> None:
        self.problems.append(problem)
