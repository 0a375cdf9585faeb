"""FastAPI app factory.

Endpoints are thin wrappers over the workflow evaluator: runs are submitted as
expressions, evaluated on a background thread and tracked in a JSON run store.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import cast

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from flux_orchestrator import __version__
from flux_orchestrator.orchestrator.config import FluxSettings
from flux_orchestrator.orchestrator.workflow.actions import (
    FunctionAction,
    RunnerAction,
    ShellAction,
    build_registry,
)
from flux_orchestrator.orchestrator.workflow.evaluator import Evaluator
from flux_orchestrator.orchestrator.workflow.expression import parse_all
from flux_orchestrator.orchestrator.workflow.outcome import ActionNotFound, ExpressionError
from flux_orchestrator.orchestrator.workflow.stages import FileStageStore
from flux_orchestrator.server.config import ServerSettings
from flux_orchestrator.server.models import ApiAction, ApiRun, ApiStage, RunRequest, RunStatus
from flux_orchestrator.server.run_runner import ActiveRuns, start_run
from flux_orchestrator.server.run_store import RunRecord, RunStore

logger = logging.getLogger(__name__)


def _iso_to_dt(value: str) -> datetime:
    # Best-effort parsing; the store always writes ISO format.
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(tz=UTC)


def _to_api_run(record: RunRecord) -> ApiRun:
    return ApiRun(
        run_id=record.run_id,
        expression=record.expression,
        status=cast(RunStatus, record.status),
        created_at=_iso_to_dt(record.created_at),
        updated_at=_iso_to_dt(record.updated_at),
        exit_status=record.exit_status,
        timed_out=record.timed_out,
        output=record.output,
        outcome=record.outcome,
        error=record.error,
    )


def _action_kind(action: object) -> str:
    if isinstance(action, ShellAction):
        return "shell"
    if isinstance(action, RunnerAction):
        return "expression"
    if isinstance(action, FunctionAction):
        return "builtin"
    return type(action).__name__


def create_app() -> FastAPI:
    settings = ServerSettings()
    flux_settings = FluxSettings()

    app = FastAPI(
        title="Flux Orchestrator",
        version=__version__,
        description="REST API for submitting and tracking flux workflow runs.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings for request handlers that want to read it.
    app.state.settings = settings
    app.state.flux_settings = flux_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    registry = build_registry(
        actions_file=flux_settings.actions_file, delimiter=flux_settings.delimiter
    )
    stages = FileStageStore(flux_settings.stage_dir, lock=flux_settings.stage_lock)
    run_store = RunStore(settings.runs_state_file)
    active = ActiveRuns()

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/v1/actions", response_model=list[ApiAction])
    def list_actions() -> list[ApiAction]:
        return [
            ApiAction(name=a.name, kind=_action_kind(a), description=a.description)
            for a in registry
        ]

    @app.post("/api/v1/runs", response_model=ApiRun)
    def create_run(req: RunRequest) -> ApiRun:
        try:
            node = parse_all(req.expressions, delimiter=flux_settings.delimiter)
            Evaluator.check(node, registry)
        except (ExpressionError, ActionNotFound) as e:
            raise HTTPException(status_code=422, detail=str(e)) from e

        run_id = start_run(
            node=node,
            stdin=(req.stdin or "").encode("utf-8"),
            settings=flux_settings,
            registry=registry,
            stages=stages,
            run_store=run_store,
            active=active,
            max_output_bytes=settings.max_output_bytes,
        )
        record = run_store.get(run_id)
        if record is None:
            raise HTTPException(status_code=500, detail="Run creation failed")
        return _to_api_run(record)

    @app.get("/api/v1/runs", response_model=list[ApiRun])
    def list_runs() -> list[ApiRun]:
        return [_to_api_run(r) for r in run_store.list()]

    @app.get("/api/v1/runs/{run_id}", response_model=ApiRun)
    def get_run(run_id: str) -> ApiRun:
        record = run_store.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _to_api_run(record)

    @app.post("/api/v1/runs/{run_id}/cancel", response_model=ApiRun)
    def cancel_run(run_id: str) -> ApiRun:
        record = run_store.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if record.finished or not active.cancel(run_id):
            raise HTTPException(status_code=409, detail=f"Run is already {record.status}")
        logger.info("Run cancellation requested", extra={"run_id": run_id})
        return _to_api_run(run_store.get(run_id) or record)

    @app.get("/api/v1/stages/{name}", response_model=ApiStage)
    def get_stage(name: str) -> ApiStage:
        try:
            path = stages.file(name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return ApiStage(
            name=name,
            file=str(path),
            exists=stages.exists(name),
            stack=stages.stack(name),
        )

    return app
