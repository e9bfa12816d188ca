"""FastAPI surface: queue actions, worker triggers and health."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from scan_orchestrator import __version__
from scan_orchestrator.api.schemas import (
    DeleteResponse,
    EnqueueRequest,
    EnqueueResponse,
    HealthResponse,
    ProcessQueueResponse,
    QueueAction,
    QueueActionRequest,
    QueueItemResponse,
    ScheduledScansResponse,
)
from scan_orchestrator.api.security import require_worker_auth
from scan_orchestrator.config import Settings
from scan_orchestrator.orchestrator.errors import (
    AlreadyQueuedError,
    InvalidTransitionError,
    ProjectConfigurationError,
    QueueItemNotFoundError,
)
from scan_orchestrator.orchestrator.runtime import ScanRuntime, build_runtime
from scan_orchestrator.orchestrator.services import EnqueueScan

logger = logging.getLogger(__name__)

queue_router = APIRouter(prefix="/api/queue", tags=["queue"])
cron_router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(require_worker_auth)],
)
health_router = APIRouter(prefix="/api", tags=["health"])


def _runtime(request: Request) -> ScanRuntime:
    return request.app.state.runtime


def _fire_trigger(runtime: ScanRuntime) -> bool:
    trigger = runtime.build_chain_trigger()
    if trigger is None:
        return False
    trigger.fire()
    return True


@queue_router.post("", status_code=status.HTTP_201_CREATED, response_model=EnqueueResponse)
def enqueue_scan(payload: EnqueueRequest, request: Request) -> EnqueueResponse:
    runtime = _runtime(request)
    item = runtime.queue_service().enqueue_scan(
        EnqueueScan(
            user_id=payload.user_id,
            project_id=payload.project_id,
            priority=payload.priority,
        ),
    )
    _fire_trigger(runtime)
    return EnqueueResponse(queue_id=item.queue_id, status=item.status.value)


@queue_router.get("/{queue_id}", response_model=QueueItemResponse)
def get_queue_item(queue_id: str, request: Request) -> QueueItemResponse:
    item = _runtime(request).queue_service().status(queue_id)
    return QueueItemResponse.from_view(item)


@queue_router.patch("/{queue_id}", response_model=QueueItemResponse)
def update_queue_item(
    queue_id: str,
    payload: QueueActionRequest,
    request: Request,
) -> QueueItemResponse:
    runtime = _runtime(request)
    service = runtime.queue_service()
    if payload.action is QueueAction.PAUSE:
        item = service.pause(queue_id)
    elif payload.action is QueueAction.RESUME:
        item = service.resume(queue_id)
        _fire_trigger(runtime)
    else:
        item = service.cancel(queue_id)
    return QueueItemResponse.from_view(item)


@queue_router.delete("/{queue_id}", response_model=DeleteResponse)
def delete_queue_item(queue_id: str, request: Request) -> DeleteResponse:
    _runtime(request).queue_service().delete(queue_id)
    return DeleteResponse(queue_id=queue_id)


@cron_router.post("/process-queue", response_model=ProcessQueueResponse)
def process_queue(request: Request) -> ProcessQueueResponse:
    """One sweep-claim-process cycle; chains the next worker when work remains."""

    runtime = _runtime(request)
    started = time.monotonic()
    summary = runtime.build_worker(chain=True).run_once()
    return ProcessQueueResponse(
        processed=summary.processed,
        remaining=runtime.queue.count_pending(),
        duration_ms=int((time.monotonic() - started) * 1000),
        queue_id=summary.queue_id,
        message=summary.message,
    )


@cron_router.post("/scheduled-scans", response_model=ScheduledScansResponse)
def scheduled_scans(request: Request) -> ScheduledScansResponse:
    runtime = _runtime(request)
    report = runtime.queue_service().enqueue_due_scans()
    triggered = _fire_trigger(runtime) if report.enqueued else False
    return ScheduledScansResponse(
        enqueued=report.enqueued_count,
        already_queued=len(report.already_queued),
        triggered=triggered,
        queue_ids=[item.queue_id for item in report.enqueued],
    )


@health_router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    return HealthResponse(status="ok", pending=_runtime(request).queue.count_pending())


def _error(status_code: int, error: Exception, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": code, "error": str(error)})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AlreadyQueuedError)
    async def _already_queued(_: Request, error: AlreadyQueuedError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, error, error.code)

    @app.exception_handler(InvalidTransitionError)
    async def _invalid_transition(_: Request, error: InvalidTransitionError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, error, "INVALID_TRANSITION")

    @app.exception_handler(QueueItemNotFoundError)
    async def _not_found(_: Request, error: QueueItemNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, error, "QUEUE_ITEM_NOT_FOUND")

    @app.exception_handler(ProjectConfigurationError)
    async def _project_missing(_: Request, error: ProjectConfigurationError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, error, "PROJECT_NOT_FOUND")


def create_app(
    settings: Settings | None = None,
    *,
    runtime: ScanRuntime | None = None,
) -> FastAPI:
    """Build the API; the runtime is owned (and closed) by the app unless injected."""

    owns_runtime = runtime is None
    if runtime is None:
        resolved = settings or Settings.from_env()
        resolved.validate_for_api()
        runtime = build_runtime(resolved)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_runtime:
            runtime.close()

    app = FastAPI(
        title="Scan Orchestrator",
        description="Queue, worker triggers and health for AI visibility scans.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.include_router(queue_router)
    app.include_router(cron_router)
    app.include_router(health_router)
    register_exception_handlers(app)
    return app
