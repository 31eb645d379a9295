# runner.py
from __future__ import annotations

import os
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .agents import Agent, AgentPool
from .artifacts import ArtifactStore
from .config import FailureConditions
from .errors import CanceledByUser, PipelineError, StepExecutionError, TimeoutExceeded
from .model import Dependency, DependencyKind, Job, Problem, Run, RunStatus, Severity, Step
from .params import ParameterContext, SecretResolver
from .ui.console import Console, get_console

DEFAULT_WORK_DIR = ".matrixci/work"

_OUTPUT_TAIL = 4000


def classify_line(line: str) -> Severity:
    """Severity of one line of error output, by its leading marker."""
    head = line.strip().lower()
    if head.startswith(("warning", "warn:", "[warn")):
        return Severity.WARNING
    if head.startswith(("info", "note", "debug", "[info", "[debug")):
        return Severity.INFO
    return Severity.ERROR


def error_lines(stderr: str, threshold: Severity) -> List[str]:
    return [
        line for line in stderr.splitlines()
        if line.strip() and classify_line(line) >= threshold
    ]


def mask(text: str, secrets: Iterable[str]) -> str:
    for value in secrets:
        if value:
            text = text.replace(value, "******")
    return text


class JobRunner:
    """
    Platform job runner: runs one job's steps on a matching agent and
    returns the run with its terminal status and published artifacts.
    """

    def __init__(
        self,
        agents: AgentPool,
        artifacts: ArtifactStore,
        *,
        conditions: FailureConditions | None = None,
        work_root: str | Path = DEFAULT_WORK_DIR,
        secrets: SecretResolver | None = None,
        console: Console | None = None,
    ):
        self.agents = agents
        self.artifacts = artifacts
        self.conditions = conditions or FailureConditions()
        self.work_root = Path(work_root).resolve()
        self.secrets = secrets or SecretResolver()
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # Execution primitives
    # ------------------------------------------------------------------

    def run_step(
        self,
        job: Job,
        step: Step,
        workdir: Path,
        ctx: ParameterContext,
        env: Dict[str, str],
        deadline: float,
    ) -> str:
        """Run one step. Raises StepExecutionError or TimeoutExceeded."""
        cwd = (workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepExecutionError(job=job.id, step=step.name, message=f"cwd not found: {cwd}")

        cmd = ctx.render(step.run, secrets="env")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutExceeded(job=job.id, timeout_s=self.conditions.timeout_s, step=step.name)

        try:
            proc = subprocess.run(
                cmd,
                shell=True,
                cwd=str(cwd),
                env=env,
                text=True,
                capture_output=True,
                timeout=remaining,
            )
        except subprocess.TimeoutExpired:
            raise TimeoutExceeded(job=job.id, timeout_s=self.conditions.timeout_s, step=step.name) from None

        secret_values = [v for k, v in env.items() if k.startswith("MATRIXCI_PARAM_")]
        stdout = mask(proc.stdout or "", secret_values)
        stderr = mask(proc.stderr or "", secret_values)
        self.console.print_output(job.id, stdout + stderr)

        if self.conditions.nonzero_exit_code and proc.returncode != 0:
            raise StepExecutionError(
                job=job.id,
                step=step.name,
                message=f"exit code {proc.returncode}",
                exit_code=proc.returncode,
                output=stderr[-_OUTPUT_TAIL:] or stdout[-_OUTPUT_TAIL:],
            )

        if self.conditions.error_message:
            errors = error_lines(stderr, self.conditions.error_severity)
            if errors:
                raise StepExecutionError(
                    job=job.id,
                    step=step.name,
                    message=f"error output: {errors[0][:200]}",
                    exit_code=proc.returncode,
                    output=stderr[-_OUTPUT_TAIL:],
                )

        return stdout

    def run_steps(self, job: Job, workdir: Path, ctx: ParameterContext) -> None:
        """Run every step in order under the global execution timeout."""
        env = os.environ.copy()
        env.update(ctx.secret_env(self.secrets))
        deadline = time.monotonic() + self.conditions.timeout_s

        for step in job.steps:
            self.console.print_step(job.id, step.name)
            self.run_step(job, step, workdir, ctx, env, deadline)

    def _workdir(self, job: Job, agent: Agent) -> Path:
        if not job.clean_checkout:
            return agent.checkout_dir
        wd = self.work_root / agent.name / job.id
        if wd.exists():
            shutil.rmtree(wd)
        wd.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            agent.checkout_dir,
            wd,
            ignore=shutil.ignore_patterns(".git", ".matrixci"),
        )
        return wd

    def _fetch_dependencies(
        self,
        job: Job,
        run: Run,
        workdir: Path,
        edges: Iterable[Dependency],
        upstream_runs: Mapping[str, Run],
    ) -> None:
        for e in edges:
            if e.kind is not DependencyKind.ARTIFACT:
                continue
            up = upstream_runs.get(e.source)
            if up is None or not up.succeeded:
                # recorded by the aggregator
                continue
            fetched = self.artifacts.fetch(e.source, up.id, e.artifact_rules, workdir)
            self.console.print_debug(f"[{job.id}] fetched {len(fetched)} artifact(s) from {e.source}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        job: Job,
        run: Run,
        ctx: ParameterContext,
        *,
        edges: Iterable[Dependency] = (),
        upstream_runs: Optional[Mapping[str, Run]] = None,
        cancel: threading.Event | None = None,
    ) -> Run:
        """
        Lease an agent, run the steps, publish artifacts.

        Failures never escape: they become problems on the returned run.
        Problems already on the run (added by the aggregator) fail it too.
        """
        upstream_runs = upstream_runs or {}
        try:
            with self.agents.lease(job, cancel=cancel) as agent:
                run.start(agent.name)
                self.console.print_job_start(job.id, run.build_number, agent.name)
                workdir = self._workdir(job, agent)
                try:
                    self._fetch_dependencies(job, run, workdir, edges, upstream_runs)
                    self.run_steps(job, workdir, ctx)
                finally:
                    self._publish(job, run, workdir)
        except PipelineError as e:
            run.add_problem(e.to_problem())
            if isinstance(e, CanceledByUser):
                run.finish(RunStatus.CANCELED)
                return run
        except OSError as e:
            run.add_problem(Problem(kind=type(e).__name__, message=str(e), job=job.id))

        run.finish(RunStatus.FAILED if run.problems else RunStatus.SUCCEEDED)
        return run

    def _publish(self, job: Job, run: Run, workdir: Path) -> None:
        try:
            run.artifacts = self.artifacts.publish(job.id, run.id, job.artifact_rules, workdir)
        except OSError as e:
            run.add_problem(Problem(kind="ArtifactPublishError", message=str(e), job=job.id))
