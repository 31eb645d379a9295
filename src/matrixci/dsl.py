# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .config import FailureConditions, PipelineConfig, ReleaseDefinition
from .errors import ConfigError
from .model import (
    Dependency,
    DependencyKind,
    FailureAction,
    Job,
    JobType,
    ParamValue,
    Platform,
    Requirement,
    SecretRef,
    Step,
    parse_artifact_rules,
)
from .agents import MEMORY_MB, OS_NAME
from .triggers import VcsTrigger


# ---------------------------------------------------------------------
# Step / requirement helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def equals(name: str, value: str) -> Requirement:
    return Requirement(name=name, op="equals", value=value)


def contains(name: str, value: str) -> Requirement:
    return Requirement(name=name, op="contains", value=value)


def no_less_than(name: str, value: Union[int, str]) -> Requirement:
    return Requirement(name=name, op="no-less-than", value=str(value))


def secret(ref: str) -> SecretRef:
    return SecretRef(ref)


def vcs(*rules: str) -> VcsTrigger:
    """Change-set trigger, e.g. vcs("-:*.md", "-:.gitignore")."""
    return VcsTrigger.from_rules(*rules)


def platform_job_id(name: str, platform: Platform) -> str:
    # ids are identifiers: letters, digits and underscores
    return f"{name}_{platform.short}"


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    """
    Mutable job definition. Frozen into a Job by Project.freeze().

        build = (
            project.job("Build_Linux", "Build (Linux)")
            .on_platform(Platform.LINUX)
            .define_step("Build", "./gradlew check")
            .with_artifacts("+:build/maven=>maven")
        )
    """

    def __init__(self, project: "Project", job_id: str, name: str | None = None):
        if not job_id.replace("_", "").isalnum():
            raise ConfigError(f"Job id must contain only letters, digits and underscores: {job_id!r}")
        self.project = project
        self.id = job_id
        self.name = name or job_id
        self._type = JobType.REGULAR
        self._platform: Optional[Platform] = None
        self._steps: list[Step] = []
        self._artifact_rules: list[str] = []
        self._requirements: list[Requirement] = []
        self._params: Dict[str, ParamValue] = {}
        self._build_number_pattern = "%build.counter%"
        self._max_running: Optional[int] = None
        self._clean_checkout = False

    def composite(self):
        self._type = JobType.COMPOSITE
        return self

    def deployment(self, *, max_running: int = 1):
        self._type = JobType.DEPLOYMENT
        self._max_running = max_running
        return self

    def on_platform(self, platform: Platform):
        self._platform = platform
        self._requirements.append(equals(OS_NAME, platform.value))
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def steps(self, *steps: Step):
        self._steps.extend(steps)
        return self

    def require(self, *requirements: Requirement):
        self._requirements.extend(requirements)
        return self

    def with_artifacts(self, rules: str):
        self._artifact_rules.append(rules)
        return self

    def param(self, name: str, value: ParamValue):
        self._params[name] = value if isinstance(value, SecretRef) else str(value)
        return self

    def password(self, name: str, ref: str):
        self._params[name] = SecretRef(ref)
        return self

    def build_number(self, pattern: str):
        self._build_number_pattern = pattern
        return self

    def max_running(self, limit: int):
        if limit < 1:
            raise ConfigError(f"Job '{self.id}': max_running must be >= 1")
        self._max_running = limit
        return self

    def clean_checkout(self, enabled: bool = True):
        self._clean_checkout = enabled
        return self

    def trigger(self, trigger: VcsTrigger):
        self.project._triggers[self.id] = trigger
        return self

    # -- dependencies ------------------------------------------------

    def depends_on(
        self,
        upstream: Union["JobBuilder", str],
        *,
        on_failure: FailureAction = FailureAction.ADD_PROBLEM,
        on_cancel: FailureAction = FailureAction.CANCEL,
    ):
        """Snapshot dependency on upstream."""
        self.project._edges.append(
            Dependency(
                source=_job_id(upstream),
                target=self.id,
                kind=DependencyKind.SNAPSHOT,
                on_failure=on_failure,
                on_cancel=on_cancel,
            )
        )
        return self

    def depends_on_snapshot(self, upstream: Union["JobBuilder", str]):
        """Strict snapshot dependency: fail to start on failure, cancel on cancel."""
        return self.depends_on(
            upstream,
            on_failure=FailureAction.FAIL_TO_START,
            on_cancel=FailureAction.CANCEL,
        )

    def depends_on_artifacts(self, upstream: Union["JobBuilder", str], rules: str):
        try:
            parsed = parse_artifact_rules(rules)
        except ValueError as e:
            raise ConfigError(f"Job '{self.id}': {e}") from e
        self.project._edges.append(
            Dependency(
                source=_job_id(upstream),
                target=self.id,
                kind=DependencyKind.ARTIFACT,
                artifact_rules=parsed,
            )
        )
        return self

    def build(self) -> Job:
        if self._type is JobType.COMPOSITE and self._steps:
            raise ConfigError(f"Composite job '{self.id}' cannot have steps")
        if self._type is not JobType.COMPOSITE and not self._steps:
            raise ConfigError(f"Job '{self.id}' has no steps")

        try:
            rules = parse_artifact_rules("\n".join(self._artifact_rules))
        except ValueError as e:
            raise ConfigError(f"Job '{self.id}': {e}") from e

        return Job(
            id=self.id,
            name=self.name,
            type=self._type,
            platform=self._platform,
            steps=tuple(self._steps),
            artifact_rules=rules,
            requirements=tuple(self._requirements),
            params=dict(self._params),
            build_number_pattern=self._build_number_pattern,
            max_running=self._max_running,
            clean_checkout=self._clean_checkout,
        )


def _job_id(ref: Union[JobBuilder, str]) -> str:
    return ref.id if isinstance(ref, JobBuilder) else ref


class Project:
    """
    Pipeline definition root.

        project = Project("matrixci", settings_version="2018.2")
        build_all = project.job("Build_All", "Build (All)").composite()
        ...
        config = project.freeze()

    `common` is applied to every job at freeze time (shared requirements,
    params).
    """

    def __init__(
        self,
        name: str,
        *,
        settings_version: str = "1",
        conditions: FailureConditions | None = None,
        common: Callable[[JobBuilder], Any] | None = None,
    ):
        self.name = name
        self.settings_version = settings_version
        self.conditions = conditions or FailureConditions()
        self.common = common
        self._builders: Dict[str, JobBuilder] = {}
        self._edges: List[Dependency] = []
        self._triggers: Dict[str, VcsTrigger] = {}
        self._order: List[str] = []
        self._release: Optional[ReleaseDefinition] = None
        self._common_applied: set[str] = set()

    def job(self, job_id: str, name: str | None = None) -> JobBuilder:
        if job_id in self._builders:
            raise ConfigError(f"Duplicate job id: {job_id}")
        b = JobBuilder(self, job_id, name)
        self._builders[job_id] = b
        return b

    def platform_job(self, platform: Platform, name: str) -> JobBuilder:
        """Job '<name>_<platform>' displayed as '<name> (<platform>)', pinned to the platform."""
        return self.job(platform_job_id(name, platform), f"{name} ({platform.value})").on_platform(platform)

    def order(self, *jobs: Union[JobBuilder, str]) -> "Project":
        self._order = [_job_id(j) for j in jobs]
        return self

    def release(
        self,
        *,
        configure: Union[JobBuilder, str],
        deploys: Iterable[Union[JobBuilder, str]],
        publish: Union[JobBuilder, str],
        version_parameter: str = "releaseVersion",
    ) -> "Project":
        self._release = ReleaseDefinition(
            configure=_job_id(configure),
            deploys=tuple(_job_id(d) for d in deploys),
            publish=_job_id(publish),
            version_parameter=version_parameter,
        )
        return self

    def freeze(self) -> PipelineConfig:
        jobs: List[Job] = []
        for b in self._builders.values():
            if self.common is not None and b.id not in self._common_applied:
                self.common(b)
                self._common_applied.add(b.id)
            jobs.append(b.build())
        return PipelineConfig(
            project=self.name,
            settings_version=self.settings_version,
            jobs=tuple(jobs),
            edges=tuple(self._edges),
            order=tuple(self._order),
            triggers=dict(self._triggers),
            release=self._release,
            conditions=self.conditions,
        )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        builds = matrix("platform", list(Platform)).jobs(
            lambda p: project.platform_job(p, "Build").define_step(...)
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobBuilder]) -> List[JobBuilder]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


def with_cwd(steps: Iterable[Step], cwd: str) -> List[Step]:
    """Apply a default cwd to steps missing one."""
    return [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps]
