# aggregator.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Mapping, Optional

from .config import PipelineConfig
from .errors import CanceledByUser, DependencyCancel, DependencyFailure, ParameterError
from .model import Dependency, DependencyKind, FailureAction, Problem, Run, RunStatus
from .params import ParameterContext, VersionParameter
from .runner import JobRunner
from .store import StateStore
from .ui.console import Console, get_console

# higher wins when several edges trigger for the same dependent
ACTION_PRIORITY = {
    FailureAction.IGNORE: 0,
    FailureAction.ADD_PROBLEM: 1,
    FailureAction.FAIL_TO_START: 2,
    FailureAction.CANCEL: 3,
}


@dataclass(frozen=True)
class EdgeDecision:
    action: Optional[FailureAction]
    problem: Optional[Problem] = None


@dataclass
class Verdict:
    """Outcome of evaluating every incoming edge of a dependent."""
    action: Optional[FailureAction] = None
    problems: List[Problem] = field(default_factory=list)

    def merge(self, decision: EdgeDecision) -> None:
        if decision.action is None:
            return
        if decision.problem is not None:
            self.problems.append(decision.problem)
        if self.action is None or ACTION_PRIORITY[decision.action] > ACTION_PRIORITY[self.action]:
            self.action = decision.action


def evaluate_edge(edge: Dependency, upstream: Run) -> EdgeDecision:
    """Policy triggered by one edge given its upstream's terminal run."""
    if upstream.status is RunStatus.SUCCEEDED:
        return EdgeDecision(action=None)

    if edge.kind is DependencyKind.ARTIFACT:
        err = DependencyFailure(
            job=edge.target,
            upstream=edge.source,
            message=f"artifact dependency unavailable: {edge.source} {upstream.status.value}",
        )
        return EdgeDecision(action=FailureAction.ADD_PROBLEM, problem=err.to_problem())

    if upstream.status is RunStatus.CANCELED:
        action = edge.on_cancel
        err = DependencyCancel(job=edge.target, upstream=edge.source)
    else:
        action = edge.on_failure
        err = DependencyFailure(job=edge.target, upstream=edge.source)

    if action is FailureAction.IGNORE:
        return EdgeDecision(action=action)
    return EdgeDecision(action=action, problem=err.to_problem())


def aggregate(edges: Iterable[Dependency], upstream_runs: Mapping[str, Run]) -> Verdict:
    """
    Evaluate every edge whose upstream run is terminal. Never short-circuits:
    all problems are collected even after a failure was seen.
    """
    verdict = Verdict()
    for e in edges:
        up = upstream_runs.get(e.source)
        if up is None or not up.status.is_terminal:
            continue
        verdict.merge(evaluate_edge(e, up))
    return verdict


def aggregate_status(edges: Iterable[Dependency], upstream_runs: Mapping[str, Run]) -> RunStatus:
    """Status of a composite job over the given upstream runs."""
    verdict = aggregate(edges, upstream_runs)
    if verdict.action is FailureAction.CANCEL:
        return RunStatus.CANCELED
    return RunStatus.FAILED if verdict.problems else RunStatus.SUCCEEDED


_SEVERITY = {RunStatus.SUCCEEDED: 0, RunStatus.CANCELED: 1, RunStatus.FAILED: 2}


@dataclass
class PipelineResult:
    targets: List[str]
    runs: Dict[str, Run]

    @property
    def status(self) -> RunStatus:
        """Worst status over the target runs."""
        worst = RunStatus.SUCCEEDED
        for t in self.targets:
            st = self.runs[t].status
            if _SEVERITY.get(st, 2) > _SEVERITY[worst]:
                worst = st
        return worst

    def problems(self) -> List[Problem]:
        return [p for r in self.runs.values() for p in r.problems]


class Scheduler:
    """
    Runs a pipeline's dependency graph.

    - Selects targets plus their transitive upstreams.
    - Runs ready jobs in parallel (one worker thread per job run).
    - Decides each dependent only after all its upstreams are terminal,
      except for cancel policies, which cancel not-yet-started dependents
      as soon as the triggering upstream finishes.
    - Composite jobs are resolved inline from their dependencies.
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: JobRunner,
        store: StateStore,
        *,
        max_workers: int | None = None,
        extra_params: Optional[Mapping[str, str]] = None,
        console: Console | None = None,
    ):
        self.config = config
        self.runner = runner
        self.store = store
        self.max_workers = max_workers
        self.extra_params = dict(extra_params or {})
        self.console = console or get_console()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Cooperative: queued jobs are canceled, running jobs finish."""
        self._cancel.set()

    def run(
        self,
        targets: Optional[Iterable[str]] = None,
        *,
        resolved: Optional[Mapping[str, Run]] = None,
        version: Optional[VersionParameter] = None,
    ) -> PipelineResult:
        graph = self.config.graph
        targets = list(targets) if targets is not None else self.config.default_targets()
        resolved = dict(resolved or {})
        overlap = sorted(set(targets) & set(resolved))
        if overlap:
            raise ValueError(f"Targets cannot also be resolved upstreams: {', '.join(overlap)}")
        for rid, r in resolved.items():
            if not r.status.is_terminal:
                raise ValueError(f"Resolved upstream run for '{rid}' is not terminal ({r.status.value})")

        selected = graph.closure(targets, stop=resolved)
        levels = graph.levels(selected)
        order = [j for level in levels for j in level]

        self.console.print_run_started(self.config.project, self.config.settings_version, targets, len(order))
        for i, level in enumerate(levels, 1):
            self.console.print_plan_level(i, level)

        state = _RunState(
            runs={j: Run(job_id=j) for j in order},
            known=dict(resolved),
            remaining={j: len(graph.upstream(j) & selected) for j in order},
            selected=selected,
            version=version,
        )

        # resolved upstreams may already cancel a dependent
        for j in order:
            self._eager_cancel(state, j, [u for u in graph.upstream(j) if u in resolved])
        state.ready.extend(j for j in order if state.remaining[j] == 0)

        workers = self.max_workers or max(1, len(self.runner.agents.agents))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            in_flight: Dict[Future, str] = {}
            while True:
                while state.ready:
                    jid = state.ready.popleft()
                    if jid in state.started or state.runs[jid].status.is_terminal:
                        continue
                    state.started.add(jid)
                    fut = self._start(state, jid, pool)
                    if fut is not None:
                        in_flight[fut] = jid

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    jid = in_flight.pop(fut)
                    # execute() records failures on the run; anything raised here is a bug
                    fut.result()
                    self._complete(state, jid)

        return PipelineResult(targets=targets, runs=state.runs)

    # ------------------------------------------------------------------

    def _upstream_runs(self, state: "_RunState", jid: str) -> Dict[str, Run]:
        chain = self.config.graph.closure([jid]) - {jid}
        return {u: state.known[u] for u in chain if u in state.known}

    def _finish_inline(self, state: "_RunState", jid: str, status: RunStatus, problems: Iterable[Problem]) -> None:
        run = state.runs[jid]
        for p in problems:
            run.add_problem(p)
        run.finish(status)
        self._complete(state, jid)

    def _start(self, state: "_RunState", jid: str, pool: ThreadPoolExecutor) -> Optional[Future]:
        job = self.config.job(jid)
        run = state.runs[jid]

        if self._cancel.is_set():
            self._finish_inline(state, jid, RunStatus.CANCELED, [CanceledByUser(job=jid).to_problem()])
            return None

        verdict = aggregate(self.config.graph.edges_into(jid), state.known)
        if verdict.action is FailureAction.CANCEL:
            self._finish_inline(state, jid, RunStatus.CANCELED, verdict.problems)
            return None
        if verdict.action is FailureAction.FAIL_TO_START:
            self._finish_inline(state, jid, RunStatus.FAILED, verdict.problems)
            return None
        for p in verdict.problems:
            run.add_problem(p)

        upstream = self._upstream_runs(state, jid)
        ctx = ParameterContext(
            job,
            counter=self.store.next_counter(jid),
            upstream_runs=upstream,
            extra=self.extra_params,
            version=state.version,
        )
        run.counter = ctx.counter
        try:
            run.build_number = ctx.assign_build_number()
            run.params = ctx.resolved()
        except ParameterError as e:
            self._finish_inline(state, jid, RunStatus.FAILED, [e.to_problem()])
            return None

        if job.is_composite:
            run.start()
            self.console.print_job_start(jid, run.build_number, None)
            self._collect_artifacts(jid, run, upstream)
            run.finish(RunStatus.FAILED if run.problems else RunStatus.SUCCEEDED)
            self._complete(state, jid)
            return None

        self.store.record_run(self.config.project, run)
        return pool.submit(
            self.runner.execute,
            job,
            run,
            ctx,
            edges=self.config.graph.edges_into(jid),
            upstream_runs=upstream,
            cancel=self._cancel,
        )

    def _collect_artifacts(self, jid: str, run: Run, upstream: Mapping[str, Run]) -> None:
        """A composite gathers its artifact dependencies into its own run directory."""
        store = self.runner.artifacts
        dest = store.run_dir(jid, run.id)
        for edge in self.config.graph.edges_into(jid):
            if edge.kind is not DependencyKind.ARTIFACT:
                continue
            up = upstream.get(edge.source)
            if up is None or not up.succeeded:
                continue
            try:
                store.fetch(edge.source, up.id, edge.artifact_rules, dest)
            except OSError as e:
                run.add_problem(Problem(kind="ArtifactPublishError", message=str(e), job=jid))
        run.artifacts = store.list(jid, run.id)

    def _eager_cancel(self, state: "_RunState", jid: str, finished_upstreams: Iterable[str]) -> bool:
        """Cancel jid right away if a finished upstream's edge says so."""
        run = state.runs[jid]
        if run.status is not RunStatus.QUEUED:
            return False
        verdict = Verdict()
        for u in finished_upstreams:
            for e in self.config.graph.edges_between(u, jid):
                verdict.merge(evaluate_edge(e, state.known[u]))
        if verdict.action is not FailureAction.CANCEL:
            return False
        self._finish_inline(state, jid, RunStatus.CANCELED, verdict.problems)
        return True

    def _complete(self, state: "_RunState", jid: str) -> None:
        run = state.runs[jid]
        state.known[jid] = run
        self.store.record_run(self.config.project, run)
        self.console.print_job_finished(run)

        for child in sorted(self.config.graph.downstream(jid) & state.selected):
            if state.runs[child].status.is_terminal:
                continue
            if self._eager_cancel(state, child, [jid]):
                continue
            state.remaining[child] -= 1
            if state.remaining[child] == 0:
                state.ready.append(child)


@dataclass
class _RunState:
    runs: Dict[str, Run]
    known: Dict[str, Run]
    remaining: Dict[str, int]
    selected: set
    version: Optional[VersionParameter] = None
    ready: Deque[str] = field(default_factory=deque)
    started: set = field(default_factory=set)
