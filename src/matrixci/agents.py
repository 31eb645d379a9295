# agents.py
from __future__ import annotations

import os
import platform as _platform
import socket
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import AgentUnavailable, CanceledByUser
from .model import Job, Platform

OS_NAME = "agent.os.name"
MEMORY_MB = "agent.hardware.memorySizeMb"

_SYSTEM_TO_PLATFORM = {
    "Linux": Platform.LINUX,
    "Darwin": Platform.MACOS,
    "Windows": Platform.WINDOWS,
}


@dataclass
class Agent:
    """A build agent: reported capabilities + the checkout it builds from."""
    name: str
    capabilities: Dict[str, str] = field(default_factory=dict)
    checkout_dir: Path = field(default_factory=lambda: Path("."))

    @property
    def os_name(self) -> str | None:
        return self.capabilities.get(OS_NAME)

    def satisfies(self, job: Job) -> bool:
        return all(r.matches(self.capabilities) for r in job.requirements)


def detect_memory_mb(default: int = 0) -> int:
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return default
    return int(pages * page_size // (1024 * 1024))


def local_agent(
    name: str | None = None,
    *,
    checkout_dir: str | Path = ".",
    os_name: str | None = None,
    memory_mb: int | None = None,
) -> Agent:
    """Agent for this machine. os_name/memory_mb override detection."""
    if os_name is None:
        detected = _SYSTEM_TO_PLATFORM.get(_platform.system())
        os_name = detected.value if detected else _platform.system()
    if memory_mb is None:
        memory_mb = detect_memory_mb()
    return Agent(
        name=name or socket.gethostname(),
        capabilities={OS_NAME: os_name, MEMORY_MB: str(memory_mb)},
        checkout_dir=Path(checkout_dir).resolve(),
    )


def parse_agent_spec(spec: str, *, checkout_dir: str | Path = ".", memory_mb: int | None = None) -> Agent:
    """
    Parse a CLI agent declaration: ``NAME=OS[:MEMORY_MB]``, e.g.
    ``win1=Windows:8192``. Such agents run on this machine but report the
    given capabilities.
    """
    name, sep, rest = spec.partition("=")
    if not sep or not name or not rest:
        raise ValueError(f"Agent spec must look like NAME=OS[:MEMORY_MB], got {spec!r}")
    os_name, mem = rest, ""
    head, colon, tail = rest.rpartition(":")
    if colon and tail.isdigit():
        os_name, mem = head, tail
    return local_agent(
        name.strip(),
        checkout_dir=checkout_dir,
        os_name=os_name.strip(),
        memory_mb=int(mem) if mem else memory_mb,
    )


class AgentPool:
    """
    Hands out idle compatible agents. Each agent runs one job at a time;
    jobs with max_running are limited across every pipeline sharing the pool.
    """

    def __init__(self, agents: List[Agent]):
        names = [a.name for a in agents]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate agent names: {sorted(names)}")
        self.agents = list(agents)
        self._busy: set[str] = set()
        self._running: Dict[str, int] = {}
        self._cond = threading.Condition()

    def compatible(self, job: Job) -> List[Agent]:
        return [a for a in self.agents if a.satisfies(job)]

    def _pick(self, job: Job) -> Optional[Agent]:
        limit = job.max_running
        if limit is not None and self._running.get(job.id, 0) >= limit:
            return None
        for a in self.compatible(job):
            if a.name not in self._busy:
                return a
        return None

    @contextmanager
    def lease(self, job: Job, cancel: threading.Event | None = None, poll_s: float = 0.2) -> Iterator[Agent]:
        """
        Block until an idle compatible agent is free, then hold it.

        Raises AgentUnavailable right away when no agent could ever run the job.
        """
        if not self.compatible(job):
            raise AgentUnavailable(job=job.id, requirements=list(job.requirements))

        with self._cond:
            while True:
                if cancel is not None and cancel.is_set():
                    raise CanceledByUser(job=job.id)
                agent = self._pick(job)
                if agent is not None:
                    break
                self._cond.wait(timeout=poll_s)
            self._busy.add(agent.name)
            self._running[job.id] = self._running.get(job.id, 0) + 1

        try:
            yield agent
        finally:
            with self._cond:
                self._busy.discard(agent.name)
                self._running[job.id] -= 1
                self._cond.notify_all()
