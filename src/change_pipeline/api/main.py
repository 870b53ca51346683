"""FastAPI app entrypoint for the change pipeline."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from change_pipeline.config import Settings, configure_logging, get_settings
from change_pipeline.coordinator import PipelineCoordinator, build_coordinator
from change_pipeline.errors import PipelineError
from change_pipeline.models import (
    Proposal,
    ProposalStatus,
    ProposedChange,
    RunMode,
    RunOutcome,
    StagedFile,
    Task,
)
from change_pipeline.storage.base import ChangeStore
from change_pipeline.storage.postgres import PostgresChangeStore


class CreateTaskRequest(BaseModel):
    prompt: str
    idempotency_key: str | None = None


class ProcessTaskRequest(CreateTaskRequest):
    mode: RunMode = RunMode.AUTO


class StageTaskRequest(BaseModel):
    files: list[StagedFile] | None = None
    proposed_changes: list[ProposedChange] = Field(default_factory=list)


class RunTestRequest(BaseModel):
    mode: RunMode = RunMode.AUTO


class BulkProposalRequest(BaseModel):
    proposal_ids: list[str] = Field(min_length=1)


class ClearTasksResponse(BaseModel):
    deleted: int


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    coordinator_override: PipelineCoordinator | None,
    storage_override: ChangeStore | None,
) -> None:
    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "coordinator"):
        if coordinator_override is not None:
            app.state.coordinator = coordinator_override
            return
        database_url = settings.resolved_database_url()
        if storage_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set CHANGE_PIPELINE_DATABASE_URL "
                "or PIPELINE_DATABASE_URL before starting the app."
            )
        store = storage_override or PostgresChangeStore(database_url)
        store.migrate()
        app.state.coordinator = build_coordinator(settings, store)


def create_app(
    *,
    coordinator: PipelineCoordinator | None = None,
    storage: ChangeStore | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or (coordinator.settings if coordinator else get_settings())
    injected = coordinator is not None or storage is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        _ensure_runtime_state(
            app,
            settings=settings,
            coordinator_override=coordinator,
            storage_override=storage,
        )
        yield

    app = FastAPI(title=settings.app_name, lifespan=None if injected else lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if injected:
        _ensure_runtime_state(
            app,
            settings=settings,
            coordinator_override=coordinator,
            storage_override=storage,
        )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    def _coordinator(request: Request) -> PipelineCoordinator:
        if not hasattr(request.app.state, "coordinator"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                coordinator_override=coordinator,
                storage_override=storage,
            )
        return request.app.state.coordinator

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks", response_model=Task)
    def submit_task(payload: CreateTaskRequest, request: Request) -> Task:
        return _coordinator(request).submit_task(payload.prompt, payload.idempotency_key)

    @app.post("/tasks/process", response_model=RunOutcome)
    def process_task(payload: ProcessTaskRequest, request: Request) -> RunOutcome:
        return _coordinator(request).process_task(
            payload.prompt,
            payload.idempotency_key,
            payload.mode,
        )

    @app.get("/tasks", response_model=list[Task])
    def list_tasks(request: Request, include_deleted: bool = False) -> list[Task]:
        return _coordinator(request).get_tasks(include_deleted=include_deleted)

    @app.delete("/tasks", response_model=ClearTasksResponse)
    def clear_tasks(request: Request) -> ClearTasksResponse:
        return ClearTasksResponse(deleted=_coordinator(request).clear_all_tasks())

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, request: Request) -> Task:
        return _coordinator(request).get_task(task_id)

    @app.delete("/tasks/{task_id}", response_model=Task)
    def delete_task(task_id: str, request: Request) -> Task:
        return _coordinator(request).delete_task(task_id)

    @app.post("/tasks/{task_id}/stage", response_model=Task)
    def stage_task(task_id: str, request: Request, payload: StageTaskRequest | None = None) -> Task:
        payload = payload or StageTaskRequest()
        return _coordinator(request).stage_task(task_id, payload.files, payload.proposed_changes)

    @app.post("/tasks/{task_id}/test", response_model=RunOutcome)
    def run_test(task_id: str, request: Request, payload: RunTestRequest | None = None) -> RunOutcome:
        payload = payload or RunTestRequest()
        return _coordinator(request).run_test(task_id, payload.mode)

    @app.post("/tasks/{task_id}/test/cancel", response_model=Task)
    def cancel_test(task_id: str, request: Request) -> Task:
        return _coordinator(request).cancel_test(task_id)

    @app.post("/tasks/{task_id}/approve", response_model=Task)
    def approve_task(task_id: str, request: Request) -> Task:
        return _coordinator(request).approve_task(task_id)

    @app.post("/tasks/{task_id}/deny", response_model=Task)
    def deny_task(task_id: str, request: Request) -> Task:
        return _coordinator(request).deny_task(task_id)

    @app.get("/proposals", response_model=list[Proposal])
    def list_proposals(
        request: Request,
        task_id: str | None = None,
        status: ProposalStatus | None = None,
    ) -> list[Proposal]:
        return _coordinator(request).get_proposals(task_id=task_id, status=status)

    @app.post("/proposals/bulk-approve", response_model=list[Proposal])
    def bulk_approve(payload: BulkProposalRequest, request: Request) -> list[Proposal]:
        return _coordinator(request).bulk_approve(payload.proposal_ids)

    @app.post("/proposals/bulk-deny", response_model=list[Proposal])
    def bulk_deny(payload: BulkProposalRequest, request: Request) -> list[Proposal]:
        return _coordinator(request).bulk_deny(payload.proposal_ids)

    @app.post("/proposals/{proposal_id}/approve", response_model=Proposal)
    def approve_proposal(proposal_id: str, request: Request) -> Proposal:
        return _coordinator(request).approve_proposal(proposal_id)

    @app.post("/proposals/{proposal_id}/deny", response_model=Proposal)
    def deny_proposal(proposal_id: str, request: Request) -> Proposal:
        return _coordinator(request).deny_proposal(proposal_id)

    return app


app = create_app()
