"""Request and response models for the scan queue HTTP API."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from scan_orchestrator.orchestrator.models import QueueItemView


class QueueAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


class EnqueueRequest(BaseModel):
    user_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    priority: int = 0


class EnqueueResponse(BaseModel):
    queue_id: str
    status: str


class QueueActionRequest(BaseModel):
    action: QueueAction


class ProgressView(BaseModel):
    current: int
    total: int
    message: str | None = None


class QueueItemResponse(BaseModel):
    queue_id: str
    project_id: str
    status: str
    progress: ProgressView
    scan_id: str | None = None
    error: str | None = None
    is_scheduled: bool = False

    @classmethod
    def from_view(cls, item: QueueItemView) -> QueueItemResponse:
        return cls(
            queue_id=item.queue_id,
            project_id=item.project_id,
            status=item.status.value,
            progress=ProgressView(
                current=item.progress_current,
                total=item.progress_total,
                message=item.progress_message,
            ),
            scan_id=item.scan_id,
            error=item.error_message,
            is_scheduled=item.is_scheduled,
        )


class DeleteResponse(BaseModel):
    queue_id: str
    deleted: bool = True


class ProcessQueueResponse(BaseModel):
    processed: int
    remaining: int
    duration_ms: int
    queue_id: str | None = None
    message: str | None = None


class ScheduledScansResponse(BaseModel):
    enqueued: int
    already_queued: int
    triggered: bool
    queue_ids: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    pending: int
