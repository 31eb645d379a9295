# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import click

from matrixci.agents import Agent, AgentPool, local_agent, parse_agent_spec
from matrixci.aggregator import Scheduler
from matrixci.artifacts import ArtifactStore
from matrixci.config import DEFAULT_PIPELINE_FILE, PipelineConfig, load_pipeline
from matrixci.errors import ConfigError, GateError
from matrixci.gate import GateState, ReleaseGate
from matrixci.model import DependencyKind, RunStatus
from matrixci.runner import JobRunner
from matrixci.settings import Settings
from matrixci.store import StateStore
from matrixci.triggers import collect_changed_files
from matrixci.ui.console import Console, get_console, set_console


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Pipeline file from the argument, or matrixci_pipeline.py in the
    current directory.

    Raises:
        SystemExit: If the pipeline file cannot be found
    """
    console = get_console()
    path = Path(pipeline_arg or DEFAULT_PIPELINE_FILE)
    if not path.exists() and path.suffix != ".py":
        path = Path(str(path) + ".py")
    if not path.exists():
        console.print_error(
            "Pipeline file not found",
            f"Could not find pipeline file: {path}",
            suggestion=f"Create {DEFAULT_PIPELINE_FILE} or pass one explicitly:\n  matrixci run --pipeline my_pipeline.py",
        )
        sys.exit(1)
    return path


def _load(pipeline_arg: str | None) -> PipelineConfig:
    path = discover_pipeline(pipeline_arg)
    try:
        return load_pipeline(path)
    except (ConfigError, TypeError) as e:
        get_console().print_error("Invalid pipeline", f"Could not load pipeline from {path}", details=[str(e)])
        sys.exit(1)


def _agents(specs: tuple[str, ...], settings: Settings) -> List[Agent]:
    if not specs:
        return [local_agent(memory_mb=settings.agent_memory_mb)]
    try:
        return [parse_agent_spec(s, memory_mb=settings.agent_memory_mb) for s in specs]
    except ValueError as e:
        get_console().print_error("Invalid agent", str(e), suggestion="Use NAME=OS[:MEMORY_MB], e.g. win1=Windows:8192")
        sys.exit(1)


def _params(pairs: tuple[str, ...]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--param")
        out[key] = value
    return out


class Environment:
    """Wires settings, store, agents and runner for one CLI invocation."""

    def __init__(
        self,
        config: PipelineConfig,
        settings: Settings,
        *,
        agents: List[Agent],
        workers: Optional[int] = None,
        params: Optional[dict[str, str]] = None,
    ):
        self.config = config
        self.settings = settings
        self.store = StateStore(settings.database_url)
        self.runner = JobRunner(
            AgentPool(agents),
            ArtifactStore(settings.artifacts_dir),
            conditions=config.conditions,
            work_root=settings.work_dir,
            console=get_console(),
        )
        self.workers = workers or settings.workers
        self.params = params or {}

    def scheduler(self) -> Scheduler:
        return Scheduler(
            self.config,
            self.runner,
            self.store,
            max_workers=self.workers,
            extra_params=self.params,
            console=get_console(),
        )

    def gate(self) -> ReleaseGate:
        return ReleaseGate(self.config, self.store, self.scheduler, console=get_console())


pipeline_option = click.option(
    "--pipeline",
    default=None,
    help=f"Pipeline file path (defaults to {DEFAULT_PIPELINE_FILE})",
)
agent_option = click.option(
    "--agent",
    "agent_specs",
    multiple=True,
    help="Declare a local agent as NAME=OS[:MEMORY_MB] (repeatable). Defaults to this machine.",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, step output and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: cross-platform build matrix orchestrator."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@pipeline_option
def plan(pipeline):
    """Show jobs, dependencies and execution stages."""
    console = get_console()
    config = _load(pipeline)

    console.print_header(f"{config.project} (settings {config.settings_version})")
    for job in config.ordered_jobs():
        platform = f" [{job.platform.value}]" if job.platform else ""
        console.print_info(f"  {job.id}: {job.name} <{job.type.value}>{platform}")
        for e in config.graph.edges_into(job.id):
            if e.kind is DependencyKind.ARTIFACT:
                rules = ", ".join(str(r) for r in e.artifact_rules)
                console.print_info(f"      <- {e.source} (artifact {rules})")
            else:
                console.print_info(
                    f"      <- {e.source} (snapshot, on failure: {e.on_failure.value}, on cancel: {e.on_cancel.value})"
                )

    console.print_header("Stages")
    for i, level in enumerate(config.graph.levels(), 1):
        console.print_plan_level(i, level)


@cli.command()
@pipeline_option
@agent_option
@click.argument("targets", nargs=-1)
@click.option("--workers", default=None, type=int, help="Number of parallel job runs")
@click.option("--param", "param_pairs", multiple=True, help="Extra parameter KEY=VALUE (repeatable)")
@click.option("--git-diff/--no-git-diff", default=False, help="Apply trigger rules to the git change-set")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--changed-file", "changed", multiple=True, help="Apply trigger rules to these changed files")
@click.pass_context
def run(ctx, pipeline, agent_specs, targets, workers, param_pairs, git_diff, compare_ref, changed):
    """Run jobs (default: triggered composite jobs) and everything they depend on."""
    console = get_console()
    config = _load(pipeline)
    settings: Settings = ctx.obj["settings"]

    selected = list(targets) or config.default_targets()
    unknown = [t for t in selected if t not in config.graph.jobs]
    if unknown:
        console.print_error("Unknown job", f"No such job(s): {', '.join(unknown)}", details=[f"Known: {', '.join(sorted(config.graph.jobs))}"])
        sys.exit(1)

    if git_diff or changed:
        change_set = list(changed)
        if git_diff:
            try:
                change_set += collect_changed_files(compare_ref)
            except (subprocess.CalledProcessError, FileNotFoundError) as e:
                console.print_error("Could not read git changes", str(e), suggestion="Run inside a git repository or pass --changed-file")
                sys.exit(1)
        kept = []
        for t in selected:
            trigger = config.triggers.get(t)
            if trigger is None:
                kept.append(t)
                continue
            included, excluded = trigger.explain(change_set)
            fired = bool(included)
            console.print_trigger(fired, included, excluded)
            if fired:
                kept.append(t)
        selected = kept
        if not selected:
            console.print_info("Nothing to run.")
            return

    env = Environment(
        config,
        settings,
        agents=_agents(agent_specs, settings),
        workers=workers,
        params=_params(param_pairs),
    )
    scheduler = env.scheduler()
    try:
        result = scheduler.run(selected)
    except KeyboardInterrupt:
        scheduler.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result.runs, result.status)
    console.print_problems(result.problems())
    if result.status is not RunStatus.SUCCEEDED:
        sys.exit(1)


@cli.command()
@pipeline_option
@click.option("--job", "job_id", default=None, help="Only runs of this job")
@click.option("--limit", default=20, show_default=True, type=int)
@click.pass_context
def status(ctx, pipeline, job_id, limit):
    """Show recent runs."""
    console = get_console()
    config = _load(pipeline)
    store = StateStore(ctx.obj["settings"].database_url)
    runs = store.runs(project=config.project, job_id=job_id, limit=limit)
    if not runs:
        console.print_info("No runs recorded.")
        return
    for r in runs:
        number = r.build_number or "-"
        console.print_info(f"  {r.job_id} #{number}: {r.status.value} ({r.queued_at:%Y-%m-%d %H:%M:%S})")


@cli.group()
def release():
    """Release sequence: configure, then deploy (explicit trigger)."""


def _gate(ctx, pipeline, agent_specs=(), workers=None) -> ReleaseGate:
    config = _load(pipeline)
    settings: Settings = ctx.obj["settings"]
    try:
        return Environment(config, settings, agents=_agents(agent_specs, settings), workers=workers).gate()
    except ConfigError as e:
        get_console().print_error("No release sequence", str(e))
        sys.exit(1)


@release.command("configure")
@pipeline_option
@agent_option
@click.pass_context
def release_configure(ctx, pipeline, agent_specs):
    """Start a release attempt and bind the release version."""
    console = get_console()
    gate = _gate(ctx, pipeline, agent_specs)
    try:
        run = gate.configure()
    except GateError as e:
        console.print_error("Release gate", str(e))
        sys.exit(1)
    gate.report()
    console.print_problems(run.problems)
    if not run.succeeded:
        sys.exit(1)


@release.command("deploy")
@pipeline_option
@agent_option
@click.option("--workers", default=None, type=int, help="Number of parallel job runs")
@click.pass_context
def release_deploy(ctx, pipeline, agent_specs, workers):
    """Deploy every platform and publish the configured version."""
    console = get_console()
    gate = _gate(ctx, pipeline, agent_specs, workers)
    try:
        result = gate.deploy()
    except GateError as e:
        console.print_error(
            "Release gate",
            str(e),
            suggestion="Start a new attempt with:\n  matrixci release configure",
        )
        sys.exit(1)
    console.print_results(result.runs, result.status)
    console.print_problems(result.problems())
    gate.report()
    if gate.state is not GateState.PUBLISHED:
        sys.exit(1)


@release.command("status")
@pipeline_option
@click.pass_context
def release_status(ctx, pipeline):
    """Show the release gate state."""
    _gate(ctx, pipeline).report()


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx, host, port):
    """Serve the read-only control plane API."""
    import uvicorn

    from matrixci.cloud.main import create_app

    store = StateStore(ctx.obj["settings"].database_url)
    uvicorn.run(create_app(store), host=host, port=port)


if __name__ == "__main__":
    cli()
