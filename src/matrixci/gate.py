# gate.py
from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

from .aggregator import PipelineResult, Scheduler
from .config import PipelineConfig, ReleaseDefinition
from .errors import ConfigError, GateError
from .model import Run
from .params import VersionParameter
from .store import GateSnapshot, StateStore
from .ui.console import Console, get_console


class GateState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURING = "configuring"
    CONFIGURED = "configured"
    DEPLOYING = "deploying"
    PUBLISHED = "published"
    FAILED = "failed"


TRANSITIONS: Dict[GateState, FrozenSet[GateState]] = {
    GateState.UNCONFIGURED: frozenset({GateState.CONFIGURING}),
    GateState.CONFIGURING: frozenset({GateState.CONFIGURED, GateState.FAILED}),
    GateState.CONFIGURED: frozenset({GateState.DEPLOYING, GateState.CONFIGURING}),
    GateState.DEPLOYING: frozenset({GateState.PUBLISHED, GateState.FAILED}),
    GateState.PUBLISHED: frozenset({GateState.CONFIGURING}),
    # no partial resume: a failed attempt restarts from configuring
    GateState.FAILED: frozenset({GateState.CONFIGURING}),
}

IN_FLIGHT = frozenset({GateState.CONFIGURING, GateState.DEPLOYING})


class ReleaseGate:
    """
    Release sequence:

        Unconfigured -> Configuring -> Configured -> Deploying -> Published
                            |                            |
                            +---------> Failed <---------+

    configure() runs the configure job and binds the version parameter to its
    build number. deploy() is the explicit trigger that fans out the deploy
    jobs and the publish job, all reading that same version. State is
    persisted so the two triggers may come from separate processes.
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: StateStore,
        scheduler_factory: Callable[[], Scheduler],
        *,
        console: Console | None = None,
    ):
        if config.release is None:
            raise ConfigError(f"Pipeline {config.project!r} defines no release sequence")
        self.config = config
        self.release: ReleaseDefinition = config.release
        self.store = store
        self.scheduler_factory = scheduler_factory
        self.console = console or get_console()
        self._snap = store.load_gate(config.project) or GateSnapshot(
            project=config.project,
            state=GateState.UNCONFIGURED.value,
            version=None,
            configure_run_id=None,
            attempt=0,
        )

    # -- state ------------------------------------------------------------

    @property
    def state(self) -> GateState:
        return GateState(self._snap.state)

    @property
    def attempt(self) -> int:
        return self._snap.attempt

    @property
    def version(self) -> Optional[VersionParameter]:
        if self._snap.version is None:
            return None
        return VersionParameter(name=self.release.version_parameter, value=self._snap.version)

    def _transition(
        self,
        target: GateState,
        *,
        version: Optional[str] = None,
        configure_run_id: Optional[str] = None,
        new_attempt: bool = False,
    ) -> None:
        current = self.state
        if target not in TRANSITIONS[current]:
            raise GateError(f"Release gate cannot go from {current.value} to {target.value}")
        self._snap = GateSnapshot(
            project=self._snap.project,
            state=target.value,
            version=version,
            configure_run_id=configure_run_id,
            attempt=self._snap.attempt + 1 if new_attempt else self._snap.attempt,
        )
        self.store.save_gate(self._snap)

    # -- triggers ---------------------------------------------------------

    def configure(self) -> Run:
        """
        Start a release attempt: run the configure job and bind the version.
        Nothing from a previous attempt is reused. An attempt left in flight
        by a process that died is marked failed first.
        """
        if self.state in IN_FLIGHT:
            self.console.print_info(
                f"Abandoning release attempt {self.attempt} left {self.state.value} by an earlier process"
            )
            self._transition(GateState.FAILED, version=self._snap.version, configure_run_id=self._snap.configure_run_id)

        self._transition(GateState.CONFIGURING, new_attempt=True)

        try:
            result = self.scheduler_factory().run([self.release.configure])
        except BaseException:
            self._transition(GateState.FAILED)
            raise
        run = result.runs[self.release.configure]

        if not run.succeeded or not run.build_number:
            self._transition(GateState.FAILED)
            return run

        self._transition(GateState.CONFIGURED, version=run.build_number, configure_run_id=run.id)
        return run

    def deploy(self) -> PipelineResult:
        """
        Explicit trigger: deploy every platform, then publish. Reaches
        Published only if every deploy run and the publish run succeeded.
        """
        if self.state is GateState.FAILED:
            raise GateError("Release attempt failed; run configure again to start a new attempt")
        if self.state in IN_FLIGHT:
            raise GateError(
                f"Release attempt {self.attempt} was left {self.state.value}; run configure again to start a new attempt"
            )
        if self.state is not GateState.CONFIGURED:
            raise GateError(f"Release gate must be configured before deploying (state: {self.state.value})")

        version = self.version
        configure_run = self.store.get_run(self._snap.configure_run_id or "")
        if version is None or configure_run is None or configure_run.build_number != version.value:
            raise GateError("Configured version is missing or does not match the configure run")

        self._transition(GateState.DEPLOYING, version=version.value, configure_run_id=configure_run.id)

        try:
            result = self.scheduler_factory().run(
                [self.release.publish],
                resolved={self.release.configure: configure_run},
                version=version,
            )
        except BaseException:
            self._transition(GateState.FAILED, version=version.value, configure_run_id=configure_run.id)
            raise

        deploys_ok = all(
            d in result.runs and result.runs[d].succeeded for d in self.release.deploys
        )
        if deploys_ok and result.runs[self.release.publish].succeeded:
            self._transition(GateState.PUBLISHED, version=version.value, configure_run_id=configure_run.id)
        else:
            self._transition(GateState.FAILED, version=version.value, configure_run_id=configure_run.id)
        return result

    def report(self) -> None:
        self.console.print_gate(self.config.project, self.state.value, self._snap.version, self.attempt)
