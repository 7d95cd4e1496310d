from __future__ import annotations

from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request, Response
from pydantic import BaseModel, Field

from ..engine import Engine
from ..errors import ArtifactConflict, ArtifactNotFound
from ..model import EventKind, Pipeline, Run, RunContext

# -------------------- Schemas --------------------

class TriggerRequest(BaseModel):
    event: EventKind
    ref: str
    base_ref: Optional[str] = None
    head_ref: Optional[str] = None
    sha: Optional[str] = None
    fail_fast: Optional[bool] = None
    timeout: Optional[float] = Field(None, gt=0)


class TriggerResponse(BaseModel):
    accepted: bool
    run_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class RunSummary(BaseModel):
    id: str
    pipeline: str
    status: str
    event: str
    ref: str
    created_at: float
    finished_at: Optional[float] = None


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


def _summary(run: Run) -> RunSummary:
    return RunSummary(
        id=run.id,
        pipeline=run.pipeline,
        status=run.status.value,
        event=run.context.event.value,
        ref=run.context.ref,
        created_at=run.created_at,
        finished_at=run.finished_at,
    )


def create_app(engine: Engine, pipeline: Pipeline) -> FastAPI:
    """HTTP surface: trigger ingestion, run status, cancellation, artifacts."""
    app = FastAPI(title="jobgraph")

    def _run_or_404(run_id: str) -> Run:
        try:
            return engine.get_run(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Run not found")

    # -------------------- Runs --------------------

    @app.post("/runs", response_model=TriggerResponse, status_code=201)
    async def trigger(req: TriggerRequest, background: BackgroundTasks, response: Response):
        ctx = RunContext(
            event=req.event,
            ref=req.ref,
            base_ref=req.base_ref,
            head_ref=req.head_ref,
            sha=req.sha,
        )
        run = engine.trigger(pipeline, ctx, fail_fast=req.fail_fast, timeout=req.timeout)
        if run is None:
            response.status_code = 200
            return TriggerResponse(accepted=False)
        if not run.terminal:
            background.add_task(engine.execute, run)
        return TriggerResponse(accepted=True, run_id=run.id, status=run.status.value, error=run.error)

    @app.get("/runs", response_model=list[RunSummary])
    async def list_runs():
        return [_summary(r) for r in list(engine.runs.values())]

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str) -> dict[str, Any]:
        return _run_or_404(run_id).as_dict()

    @app.get("/runs/{run_id}/events")
    async def get_events(run_id: str) -> list[dict[str, Any]]:
        run = _run_or_404(run_id)
        return [
            {"key": e.key, "old": e.old, "new": e.new, "reason": e.reason, "at": e.at}
            for e in list(run.events)
        ]

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    async def cancel(run_id: str):
        run = _run_or_404(run_id)
        if run.terminal:
            raise HTTPException(status_code=409, detail=f"Run already {run.status.value}")
        return CancelResponse(run_id=run_id, cancelled=engine.cancel(run_id))

    # -------------------- Artifacts --------------------

    @app.put("/runs/{run_id}/artifacts/{name}", status_code=201)
    async def publish(run_id: str, name: str, request: Request, x_producer: str = Header("external")):
        _run_or_404(run_id)
        payload = await request.body()
        try:
            art = engine.broker.publish(run_id, x_producer, name, payload)
        except ArtifactConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        return art.describe()

    @app.get("/runs/{run_id}/artifacts")
    async def list_artifacts(run_id: str) -> list[dict[str, Any]]:
        _run_or_404(run_id)
        return [a.describe() for a in engine.broker.list(run_id)]

    @app.get("/runs/{run_id}/artifacts/{name}")
    async def fetch(run_id: str, name: str):
        _run_or_404(run_id)
        try:
            art = engine.broker.fetch(run_id, name)
        except ArtifactNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        return Response(
            content=art.payload,
            media_type="application/octet-stream",
            headers={"X-Producer": art.producer, "X-Digest": art.digest},
        )

    return app
