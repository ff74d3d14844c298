from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..engine import Engine
from ..errors import ConfigurationError, RunNotFound
from ..model import EVENT_KINDS, Event

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    repository: str = Field(min_length=1)
    ref: str = Field(min_length=1)
    changed_paths: list[str] = Field(default_factory=list)
    actor: str = ""
    timestamp: Optional[datetime] = None
    kind: str = "push"

class EventResponse(BaseModel):
    run_ids: list[str]

class JobResponse(BaseModel):
    name: str
    status: str
    error_kind: str | None = None
    error_message: str | None = None
    skip_reason: str | None = None
    skipped_by_failure: bool = False
    artifacts: dict[str, str] = Field(default_factory=dict)

class RunResponse(BaseModel):
    id: str
    workflow: str
    status: str
    event: dict[str, Any]
    jobs: list[JobResponse]
    outputs: dict[str, str]
    created_at: str
    finished_at: str | None

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool

class EnvironmentResponse(BaseModel):
    name: str
    url: str
    run_id: str | None
    artifact: str | None


def create_app(engine: Engine) -> FastAPI:
    """HTTP control plane over an Engine that already loaded its workflows."""
    app = FastAPI(title="pipewright control plane")

    # -------------------- Endpoints --------------------

    @app.post("/events", response_model=EventResponse, status_code=202)
    def post_event(req: EventRequest, background: BackgroundTasks):
        if req.kind not in EVENT_KINDS:
            raise HTTPException(status_code=422, detail=f"kind must be one of {list(EVENT_KINDS)}")
        try:
            event = Event.from_dict(req.model_dump(exclude_none=True))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            planned = engine.plan(event)
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if planned:
            # runs continue after the response is sent
            background.add_task(engine.execute, planned)
        logger.info("event %s %s scheduled %d run(s)", event.kind, event.ref, len(planned))
        return EventResponse(run_ids=[run.id for run, _ in planned])

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        try:
            return engine.get_run(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        try:
            cancelled = engine.cancel(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail="Run not found")
        return CancelResponse(run_id=run_id, cancelled=cancelled)

    @app.get("/environments/{name}", response_model=EnvironmentResponse)
    def get_environment(name: str):
        env = engine.environment(name)
        if env.url is None:
            raise HTTPException(status_code=404, detail="Environment was never deployed")
        return EnvironmentResponse(name=env.name, url=env.url, run_id=env.run_id, artifact=env.artifact)

    return app
