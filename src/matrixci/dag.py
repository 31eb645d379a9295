# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .errors import ConfigError
from .model import Dependency, DependencyKind, Job


class DependencyGraph:
    """
    Directed graph of jobs with typed edges, built once and validated acyclic.

    Edge direction follows execution order: ``source`` runs before ``target``.
    """

    def __init__(self, jobs: Iterable[Job], edges: Iterable[Dependency]):
        jobs = list(jobs)
        ids = [j.id for j in jobs]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise ConfigError(f"Duplicate job ids found: {dupes}")

        self.jobs: Dict[str, Job] = {j.id: j for j in jobs}
        self.edges: Tuple[Dependency, ...] = tuple(edges)

        self._down: Dict[str, Set[str]] = {i: set() for i in self.jobs}   # source -> targets
        self._up: Dict[str, Set[str]] = {i: set() for i in self.jobs}     # target -> sources
        self._by_target: Dict[str, List[Dependency]] = {i: [] for i in self.jobs}

        for e in self.edges:
            for end in (e.source, e.target):
                if end not in self.jobs:
                    raise ConfigError(
                        f"Dependency {e.source} -> {e.target} refers to missing job '{end}'. "
                        f"Known jobs: {sorted(self.jobs)}"
                    )
            if e.source == e.target:
                raise ConfigError(f"Job '{e.source}' depends on itself")
            if e.kind is DependencyKind.ARTIFACT and not e.artifact_rules:
                raise ConfigError(f"Artifact dependency {e.source} -> {e.target} has no artifact rules")
            self._down[e.source].add(e.target)
            self._up[e.target].add(e.source)
            self._by_target[e.target].append(e)

        # raises on cycles
        self._levels = self._topo_levels(set(self.jobs))

    def upstream(self, job_id: str) -> Set[str]:
        return set(self._up[job_id])

    def downstream(self, job_id: str) -> Set[str]:
        return set(self._down[job_id])

    def edges_into(self, job_id: str) -> List[Dependency]:
        return list(self._by_target[job_id])

    def edges_between(self, source: str, target: str) -> List[Dependency]:
        return [e for e in self._by_target[target] if e.source == source]

    def closure(self, targets: Iterable[str], *, stop: Iterable[str] = ()) -> Set[str]:
        """
        Targets plus all their transitive upstream jobs. Jobs in `stop` are
        neither included nor expanded.
        """
        stop_set = set(stop)
        seen: Set[str] = set()
        stack = list(targets)
        while stack:
            node = stack.pop()
            if node not in self.jobs:
                raise ConfigError(f"Unknown job '{node}'. Known jobs: {sorted(self.jobs)}")
            if node in seen or node in stop_set:
                continue
            seen.add(node)
            stack.extend(self._up[node])
        return seen

    def levels(self, subset: Optional[Set[str]] = None) -> List[List[str]]:
        if subset is None:
            return [list(level) for level in self._levels]
        return self._topo_levels(subset)

    def _topo_levels(self, subset: Set[str]) -> List[List[str]]:
        """
        Convert the (sub)graph into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = {n: len(self._up[n] & subset) for n in subset}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))

        levels: List[List[str]] = []
        processed = 0

        while q:
            level_size = len(q)
            level: List[str] = []

            for _ in range(level_size):
                node = q.popleft()
                level.append(node)
                processed += 1

                for child in sorted(self._down[node] & subset):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)

            levels.append(level)

        if processed != len(indeg):
            remaining = sorted(n for n, d in indeg.items() if d > 0)
            raise ConfigError(f"Dependency graph has a cycle. Stuck jobs: {remaining}")

        return levels
