from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from matrixci.model import Run
from matrixci.store import StateStore

# -------------------- Schemas --------------------

class ProblemResponse(BaseModel):
    kind: str
    message: str
    job: str
    step: str | None = None

class RunResponse(BaseModel):
    id: str
    job_id: str
    status: str
    build_number: str | None
    agent: str | None
    problems: list[ProblemResponse] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    queued_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    build_number: str | None
    finished_at: datetime | None

class GateResponse(BaseModel):
    project: str
    state: str
    version: str | None
    attempt: int
    updated_at: datetime | None

def _run_response(run: Run) -> RunResponse:
    return RunResponse(
        id=run.id,
        job_id=run.job_id,
        status=run.status.value,
        build_number=run.build_number,
        agent=run.agent,
        problems=[ProblemResponse(**p.to_dict()) for p in run.problems],
        artifacts=run.artifacts,
        params=run.params,
        queued_at=run.queued_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )

# -------------------- App --------------------

def create_app(store: StateStore) -> FastAPI:
    """Read-only control plane over the orchestrator state store."""
    app = FastAPI(title="matrixci control plane")

    @app.get("/health")
    def health() -> dict:
        return {"ok": True}

    @app.get("/runs", response_model=list[RunResponse])
    def list_runs(
        project: str | None = None,
        job_id: str | None = None,
        limit: int = Query(50, ge=1, le=500),
    ):
        return [_run_response(r) for r in store.runs(project=project, job_id=job_id, limit=limit)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        run = store.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(run)

    @app.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
    def job_status(job_id: str, project: str | None = None):
        """External build status (for badges)."""
        run = store.latest_run(job_id, project=project)
        if run is None:
            raise HTTPException(status_code=404, detail="No runs for job")
        return JobStatusResponse(
            job_id=job_id,
            status=run.status.value,
            build_number=run.build_number,
            finished_at=run.finished_at,
        )

    @app.get("/release/{project}", response_model=GateResponse)
    def release(project: str):
        snap = store.load_gate(project)
        if snap is None:
            raise HTTPException(status_code=404, detail="No release for project")
        return GateResponse(
            project=snap.project,
            state=snap.state,
            version=snap.version,
            attempt=snap.attempt,
            updated_at=snap.updated_at,
        )

    return app
