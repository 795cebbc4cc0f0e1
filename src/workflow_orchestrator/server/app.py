"""FastAPI app factory.

Endpoints are thin wrappers over :class:`WorkflowEngine` and
:class:`BatchJobService`; domain errors are mapped to HTTP status codes in one
place (:func:`_status_for`).
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Body, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workflow_orchestrator import __version__
from workflow_orchestrator.orchestrator.config import EngineSettings
from workflow_orchestrator.orchestrator.outbound import RequestsCallExecutor
from workflow_orchestrator.orchestrator.store import open_store
from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJobService
from workflow_orchestrator.orchestrator.workflow.callbacks import (
    normalize_callback,
    secret_from_headers,
)
from workflow_orchestrator.orchestrator.workflow.diagram import decode_diagram, encode_diagram
from workflow_orchestrator.orchestrator.workflow.engine import WorkflowEngine
from workflow_orchestrator.orchestrator.workflow.errors import (
    AuthenticationError,
    FanOutLimitError,
    NotFoundError,
    WorkflowError,
)
from workflow_orchestrator.orchestrator.workflow.events import EngineEvent, EventBus
from workflow_orchestrator.orchestrator.workflow.normalize import normalize_workflow
from workflow_orchestrator.orchestrator.workflow.state_machine import (
    IllegalTransitionError,
    RunStatus,
)
from workflow_orchestrator.orchestrator.workflow.steps import Workflow, dump_step
from workflow_orchestrator.server.batch_router import router as batch_router
from workflow_orchestrator.server.config import ServerSettings
from workflow_orchestrator.server.deadline_runner import DeadlineMonitor
from workflow_orchestrator.server.models import (
    DiagramParseRequest,
    DiagramRenderRequest,
    ReviewRequest,
    StartRunRequest,
    UnitCompletionRequest,
    run_json,
    unit_json,
)

logger = logging.getLogger(__name__)


def _status_for(exc: Exception) -> int:
    if isinstance(exc, IllegalTransitionError):
        return 409
    if isinstance(exc, AuthenticationError):
        return 401
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, FanOutLimitError):
        return 422
    return 400


def _workflow_json(workflow: Workflow) -> dict[str, Any]:
    return workflow.model_dump(mode="json", by_alias=True, exclude_none=True)


def _log_event(event: EngineEvent) -> None:
    logger.debug(
        "Engine event",
        extra={"event_type": event.type, "run_id": event.run_id, "step_id": event.step_id},
    )


def create_app() -> FastAPI:
    settings = ServerSettings()
    engine_settings = EngineSettings()

    app = FastAPI(
        title="Workflow Orchestrator",
        version=__version__,
        description="REST API over the workflow engine and batch job aggregator.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    store = open_store(engine_settings.state_path)
    events = EventBus()
    events.subscribe(_log_event)
    engine = WorkflowEngine(
        store=store,
        events=events,
        executor=RequestsCallExecutor(
            timeout_ms=engine_settings.outbound_timeout_ms,
            max_retries=engine_settings.outbound_max_retries,
            retry_delay_ms=engine_settings.outbound_retry_delay_ms,
        ),
        foreach_max_items=engine_settings.foreach_max_items,
        public_base_url=engine_settings.public_base_url,
    )
    batch_jobs = BatchJobService(store=store, events=events)

    # Expose settings and services for request handlers and routers.
    app.state.settings = settings
    app.state.engine_settings = engine_settings
    app.state.events = events
    app.state.engine = engine
    app.state.batch_jobs = batch_jobs

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowError)
    @app.exception_handler(IllegalTransitionError)
    def domain_error(request: Request, exc: Exception) -> JSONResponse:
        status = _status_for(exc)
        log = logger.warning if status in {401, 409} else logger.info
        log(
            "Request rejected",
            extra={"path": request.url.path, "status_code": status, "error": str(exc)},
        )
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    app.include_router(batch_router, prefix="/api/v1")

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # Workflows

    @app.post("/api/v1/workflows", status_code=201)
    def create_workflow(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        workflow, generated = engine.save_workflow(payload)
        return {**_workflow_json(workflow), "generatedStepIds": generated}

    @app.get("/api/v1/workflows")
    def list_workflows(
        include_inactive: bool = Query(default=False, alias="includeInactive"),
    ) -> list[dict[str, Any]]:
        return [
            _workflow_json(w) for w in engine.list_workflows(include_inactive=include_inactive)
        ]

    @app.get("/api/v1/workflows/{workflow_id}")
    def get_workflow(workflow_id: str) -> dict[str, Any]:
        return _workflow_json(engine.get_workflow(workflow_id))

    @app.put("/api/v1/workflows/{workflow_id}")
    def update_workflow(workflow_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        engine.get_workflow(workflow_id)
        workflow, generated = engine.save_workflow({**payload, "id": workflow_id})
        return {**_workflow_json(workflow), "generatedStepIds": generated}

    @app.delete("/api/v1/workflows/{workflow_id}")
    def delete_workflow(workflow_id: str) -> dict[str, bool]:
        engine.delete_workflow(workflow_id)
        return {"deleted": True}

    @app.post("/api/v1/diagram/parse")
    def parse_diagram(req: DiagramParseRequest) -> dict[str, Any]:
        decoded = decode_diagram(req.diagram)
        return {
            "name": decoded.name,
            "entryStepId": decoded.entry_step_id,
            "steps": [dump_step(step) for step in decoded.steps],
            "warnings": decoded.warnings,
        }

    @app.post("/api/v1/diagram/render")
    def render_diagram(req: DiagramRenderRequest) -> dict[str, str]:
        workflow, _ = normalize_workflow(
            {"name": req.name or "", "steps": req.steps, "entryStepId": req.entry_step_id}
        )
        diagram = encode_diagram(
            workflow.steps,
            name=req.name,
            entry_step_id=workflow.entry_step_id,
            direction=req.direction,
        )
        return {"diagram": diagram}

    # Runs

    @app.post("/api/v1/workflows/{workflow_id}/runs", status_code=201)
    def start_run(
        workflow_id: str, req: StartRunRequest | None = Body(default=None)
    ) -> dict[str, Any]:
        run = engine.start_run(workflow_id, req.input if req else None)
        return run_json(run, include_secret=True)

    @app.get("/api/v1/workflow-runs")
    def list_runs(
        workflow_id: str | None = Query(default=None, alias="workflowId"),
        status: RunStatus | None = Query(default=None),
    ) -> list[dict[str, Any]]:
        return [run_json(r) for r in engine.list_runs(workflow_id=workflow_id, status=status)]

    @app.get("/api/v1/workflow-runs/{run_id}")
    def get_run(run_id: str) -> dict[str, Any]:
        return run_json(engine.get_run(run_id))

    @app.post("/api/v1/workflow-runs/{run_id}/cancel")
    def cancel_run(run_id: str) -> dict[str, Any]:
        return run_json(engine.cancel_run(run_id))

    @app.post("/api/v1/workflow-runs/{run_id}/pause")
    def pause_run(run_id: str) -> dict[str, Any]:
        return run_json(engine.pause_run(run_id))

    @app.post("/api/v1/workflow-runs/{run_id}/resume")
    def resume_run(run_id: str) -> dict[str, Any]:
        return run_json(engine.resume_run(run_id))

    @app.get("/api/v1/workflow-runs/{run_id}/units")
    def list_units(
        run_id: str, step_id: str | None = Query(default=None, alias="stepId")
    ) -> list[dict[str, Any]]:
        return [unit_json(u) for u in engine.list_units(run_id, step_id=step_id)]

    @app.post("/api/v1/workflow-runs/{run_id}/callback/{step_id}")
    def step_callback(
        request: Request,
        run_id: str,
        step_id: str,
        payload: Any = Body(default=None),
        expected_count: str | None = Header(default=None, alias="X-Expected-Count"),
        workflow_complete: str | None = Header(default=None, alias="X-Workflow-Complete"),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ) -> dict[str, object]:
        callback = normalize_callback(
            payload,
            expected_count_header=expected_count,
            complete_header=workflow_complete,
            idempotency_key_header=idempotency_key,
        )
        ack = engine.ingest_callback(
            run_id, step_id, secret=secret_from_headers(request.headers), callback=callback
        )
        return ack.to_json()

    @app.post("/api/v1/workflow-runs/{run_id}/units/{unit_id}/complete")
    def complete_unit(
        request: Request,
        run_id: str,
        unit_id: str,
        req: UnitCompletionRequest | None = Body(default=None),
    ) -> dict[str, object]:
        req = req or UnitCompletionRequest()
        ack = engine.complete_unit(
            run_id,
            unit_id,
            secret=secret_from_headers(request.headers),
            success=req.success,
            output=req.output,
            error=req.error,
        )
        return ack.to_json()

    @app.post("/api/v1/workflow-runs/{run_id}/steps/{step_id}/review")
    def review_step(run_id: str, step_id: str, req: ReviewRequest) -> dict[str, Any]:
        run = engine.resolve_review(
            run_id, step_id, decision=req.decision, reviewed_by=req.reviewed_by
        )
        return run_json(run)

    monitor = DeadlineMonitor(
        engine=engine,
        batch_jobs=batch_jobs,
        interval_seconds=settings.deadline_check_interval_seconds,
    )
    app.state.deadline_monitor = monitor

    @app.post("/api/v1/maintenance/check-deadlines")
    def check_deadlines() -> dict[str, list[str]]:
        runs, jobs = monitor.sweep()
        return {"runs": runs, "batchJobs": jobs}

    if settings.deadline_check_enabled:
        monitor.start()

    return app
