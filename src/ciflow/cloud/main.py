from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..coordinator import RunCoordinator
from ..errors import ConfigError, RunNotFound
from ..loader import find_pipeline_files, load_pipeline
from ..model import Event, EventKind
from ..settings import Settings
from ..triggers import Rejected

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: EventKind
    branch: Optional[str] = None
    sha: Optional[str] = None
    tag: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    actor: Optional[str] = None
    message: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_event(self) -> Event:
        ts = self.timestamp or datetime.now(timezone.utc)
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return Event(
            kind=self.kind,
            branch=self.branch,
            sha=self.sha,
            tag=self.tag,
            tags=tuple(self.tags),
            actor=self.actor,
            message=self.message,
            timestamp=ts,
        )


class CreateRunResponse(BaseModel):
    accepted: bool
    run_id: Optional[str] = None
    reason: Optional[str] = None


class RunSummary(BaseModel):
    id: str
    pipeline: str
    status: str
    trigger: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None
    archived: bool = False


class CancelResponse(BaseModel):
    run_id: str
    canceled: bool


class ArtifactInfo(BaseModel):
    name: str
    producer: str
    sha256: str
    size: int
    created_at: Optional[str] = None
    expires_at: Optional[str] = None


def _summary(run: dict[str, Any]) -> RunSummary:
    return RunSummary(
        id=run["id"],
        pipeline=run["pipeline"],
        status=run["status"],
        trigger=run.get("trigger"),
        created_at=run["created_at"],
        completed_at=run.get("completed_at"),
        archived=bool(run.get("archived", False)),
    )


# -------------------- App --------------------

def create_app(coordinator: RunCoordinator) -> FastAPI:
    app = FastAPI(title="ciflow control plane")
    app.state.coordinator = coordinator

    @app.on_event("shutdown")
    def shutdown() -> None:
        coordinator.shutdown(cancel=True, timeout=10)

    def _describe(run_id: str) -> dict[str, Any]:
        try:
            return coordinator.describe(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: EventRequest):
        try:
            result = coordinator.start(req.to_event())
        except ConfigError as e:
            raise HTTPException(status_code=422, detail=e.to_dict())
        if isinstance(result, Rejected):
            return CreateRunResponse(accepted=False, reason=result.reason)
        return CreateRunResponse(accepted=True, run_id=result)

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs(limit: int = 100):
        live = [_summary(r.to_dict()) for r in coordinator.list_runs()]
        seen = {r.id for r in live}
        archived = []
        if coordinator.archive is not None:
            archived = [_summary(r) for r in coordinator.archive.list(limit) if r["id"] not in seen]
        out = sorted(live + archived, key=lambda r: r.created_at, reverse=True)
        return out[:limit]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        return _describe(run_id)

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        try:
            canceled = coordinator.cancel(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")
        return CancelResponse(run_id=run_id, canceled=canceled)

    @app.get("/runs/{run_id}/artifacts", response_model=list[ArtifactInfo])
    def list_artifacts(run_id: str):
        try:
            run = coordinator.status(run_id)
        except RunNotFound:
            return [ArtifactInfo(**a) for a in _describe(run_id).get("artifacts", [])]
        if run.done:
            return [ArtifactInfo(**a) for a in run.artifacts]
        return [ArtifactInfo(**a.describe()) for a in coordinator.store.list(run_id)]

    return app


def app_from_env() -> FastAPI:
    """
    ASGI factory: `uvicorn --factory ciflow.cloud.main:app_from_env`.

    The pipeline document comes from CIFLOW_PIPELINE or is discovered in
    the working directory.
    """
    settings = Settings.from_env()
    if settings.pipeline:
        path = Path(settings.pipeline)
    else:
        found = find_pipeline_files(".")
        if len(found) != 1:
            raise RuntimeError(
                "Set CIFLOW_PIPELINE: expected exactly one pipeline document in the working directory, "
                f"found {[str(p) for p in found]}"
            )
        path = found[0]
    return create_app(RunCoordinator(load_pipeline(path), settings))
