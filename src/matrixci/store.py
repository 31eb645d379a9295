# store.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import Problem, Run, RunStatus

DEFAULT_DATABASE_URL = "sqlite:///.matrixci/state.db"


class Base(DeclarativeBase):
    pass


class BuildCounter(Base):
    __tablename__ = "build_counters"
    job_id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    value: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    project: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    build_number: Mapped[Optional[str]] = mapped_column(sa.Text)
    counter: Mapped[Optional[int]] = mapped_column(sa.Integer)
    agent: Mapped[Optional[str]] = mapped_column(sa.Text)
    problems_json: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    params_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    artifacts_json: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    queued_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))


class GateRecord(Base):
    __tablename__ = "release_gates"
    project: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    version: Mapped[Optional[str]] = mapped_column(sa.Text)
    configure_run_id: Mapped[Optional[str]] = mapped_column(sa.String(32))
    attempt: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


@dataclass(frozen=True)
class GateSnapshot:
    project: str
    state: str
    version: str | None
    configure_run_id: str | None
    attempt: int
    updated_at: datetime | None = None


def _aware(dt: datetime | None) -> datetime | None:
    # sqlite drops tzinfo
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _to_run(rec: RunRecord) -> Run:
    return Run(
        job_id=rec.job_id,
        id=rec.id,
        status=RunStatus(rec.status),
        build_number=rec.build_number,
        counter=rec.counter,
        agent=rec.agent,
        artifacts=list(rec.artifacts_json or []),
        problems=[Problem.from_dict(p) for p in rec.problems_json or []],
        params=dict(rec.params_json or {}),
        queued_at=_aware(rec.queued_at),
        started_at=_aware(rec.started_at),
        finished_at=_aware(rec.finished_at),
    )


class StateStore:
    """
    Persistent orchestrator state:
      - per-job build counters (strictly increasing)
      - run history
      - release gate records
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL):
        kwargs: dict = {}
        u = sa.engine.make_url(url)
        if u.get_backend_name() == "sqlite":
            if u.database and u.database != ":memory:":
                Path(u.database).parent.mkdir(parents=True, exist_ok=True)
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = sa.create_engine(url, future=True, **kwargs)
        self._session = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        # sqlite has no row locks; serialize counter increments in-process
        self._lock = threading.Lock()
        Base.metadata.create_all(self.engine)

    # -- counters ---------------------------------------------------------

    def next_counter(self, job_id: str) -> int:
        with self._lock, self._session() as s, s.begin():
            row = s.get(BuildCounter, job_id, with_for_update=True)
            if row is None:
                row = BuildCounter(job_id=job_id, value=0)
                s.add(row)
            row.value += 1
            return row.value

    def peek_counter(self, job_id: str) -> int:
        with self._session() as s:
            row = s.get(BuildCounter, job_id)
            return row.value if row else 0

    # -- runs -------------------------------------------------------------

    def record_run(self, project: str, run: Run) -> None:
        with self._session() as s, s.begin():
            rec = s.get(RunRecord, run.id)
            if rec is None:
                rec = RunRecord(id=run.id, project=project, job_id=run.job_id, queued_at=run.queued_at)
                s.add(rec)
            rec.status = run.status.value
            rec.build_number = run.build_number
            rec.counter = run.counter
            rec.agent = run.agent
            rec.problems_json = [p.to_dict() for p in run.problems]
            rec.params_json = dict(run.params)
            rec.artifacts_json = list(run.artifacts)
            rec.started_at = run.started_at
            rec.finished_at = run.finished_at

    def get_run(self, run_id: str) -> Run | None:
        with self._session() as s:
            rec = s.get(RunRecord, run_id)
            return _to_run(rec) if rec else None

    def latest_run(self, job_id: str, project: str | None = None) -> Run | None:
        runs = self.runs(job_id=job_id, project=project, limit=1)
        return runs[0] if runs else None

    def runs(self, *, project: str | None = None, job_id: str | None = None, limit: int = 50) -> List[Run]:
        q = sa.select(RunRecord)
        if project is not None:
            q = q.where(RunRecord.project == project)
        if job_id is not None:
            q = q.where(RunRecord.job_id == job_id)
        q = q.order_by(RunRecord.queued_at.desc(), RunRecord.counter.desc()).limit(limit)
        with self._session() as s:
            return [_to_run(r) for r in s.scalars(q).all()]

    # -- release gate -----------------------------------------------------

    def load_gate(self, project: str) -> GateSnapshot | None:
        with self._session() as s:
            rec = s.get(GateRecord, project)
            if rec is None:
                return None
            return GateSnapshot(
                project=rec.project,
                state=rec.state,
                version=rec.version,
                configure_run_id=rec.configure_run_id,
                attempt=rec.attempt,
                updated_at=_aware(rec.updated_at),
            )

    def save_gate(self, snap: GateSnapshot) -> None:
        with self._session() as s, s.begin():
            rec = s.get(GateRecord, snap.project)
            if rec is None:
                rec = GateRecord(project=snap.project)
                s.add(rec)
            rec.state = snap.state
            rec.version = snap.version
            rec.configure_run_id = snap.configure_run_id
            rec.attempt = snap.attempt
            rec.updated_at = datetime.now(timezone.utc)
