"""Shared fixtures: isolated state store, agents for every platform, quiet console."""

import io

import pytest

from matrixci.agents import MEMORY_MB, OS_NAME, Agent, AgentPool
from matrixci.aggregator import Scheduler
from matrixci.artifacts import ArtifactStore
from matrixci.dsl import Project
from matrixci.model import Platform
from matrixci.params import SecretResolver
from matrixci.runner import JobRunner
from matrixci.store import StateStore
from matrixci.ui.console import Console


@pytest.fixture
def console():
    """Console writing into buffers instead of the terminal."""
    return Console(debug=True, stream=io.StringIO(), err_stream=io.StringIO())


@pytest.fixture
def checkout(tmp_path):
    d = tmp_path / "checkout"
    d.mkdir()
    return d


@pytest.fixture
def store(tmp_path):
    return StateStore(f"sqlite:///{tmp_path / 'state.db'}")


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def agents(checkout):
    """One agent per platform, all building from the same checkout."""
    return [
        Agent(
            name=f"agent-{p.short.lower()}",
            capabilities={OS_NAME: p.value, MEMORY_MB: "8192"},
            checkout_dir=checkout,
        )
        for p in Platform
    ]


@pytest.fixture
def make_runner(tmp_path, agents, artifacts, console):
    def _make(config, *, secrets=None, pool=None):
        return JobRunner(
            pool or AgentPool(agents),
            artifacts,
            conditions=config.conditions,
            work_root=tmp_path / "work",
            secrets=secrets or SecretResolver(environ={}),
            console=console,
        )

    return _make


@pytest.fixture
def make_scheduler(make_runner, store, console):
    """Build a scheduler for a Project (or frozen PipelineConfig)."""

    def _make(project, *, max_workers=None, extra_params=None, secrets=None):
        config = project.freeze() if isinstance(project, Project) else project
        return Scheduler(
            config,
            make_runner(config, secrets=secrets),
            store,
            max_workers=max_workers,
            extra_params=extra_params,
            console=console,
        )

    return _make
