"""Use-case services for the scan queue and scheduled scans."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from scan_orchestrator.orchestrator.errors import AlreadyQueuedError, ProjectConfigurationError
from scan_orchestrator.orchestrator.ledger import CreditLedger
from scan_orchestrator.orchestrator.models import (
    QueueItemCreate,
    QueueItemDetails,
    QueueItemView,
    QueueStatus,
    ScanStatus,
)
from scan_orchestrator.orchestrator.repository import RESET_STUCK_MESSAGE, QueueRepository
from scan_orchestrator.orchestrator.scans import ScanRepository
from scan_orchestrator.orchestrator.scheduling import next_run
from scan_orchestrator.orchestrator.settlement import ScanSettlement
from scan_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EnqueueScan:
    """High-level command to queue a manual scan."""

    user_id: str
    project_id: str
    priority: int = 0


@dataclass(slots=True)
class ScheduleTickReport:
    """Outcome of one scheduled-scan tick."""

    enqueued: list[QueueItemView] = field(default_factory=list)
    already_queued: list[str] = field(default_factory=list)
    advanced: dict[str, datetime] = field(default_factory=dict)

    @property
    def enqueued_count(self) -> int:
        return len(self.enqueued)


class QueueService:
    """User-facing queue actions plus the scheduled-scan tick."""

    def __init__(
        self,
        *,
        queue: QueueRepository,
        scans: ScanRepository,
        ledger: CreditLedger,
        list_limit: int = 50,
        evaluation_model_id: str | None = None,
    ) -> None:
        self.queue = queue
        self.scans = scans
        self.settlement = ScanSettlement(scans=scans, ledger=ledger)
        self.list_limit = list_limit
        self.evaluation_model_id = evaluation_model_id

    def enqueue_scan(self, command: EnqueueScan) -> QueueItemView:
        project = self.scans.get_project(command.project_id)
        if project is None or project.user_id != command.user_id:
            raise ProjectConfigurationError(f"Project not found: {command.project_id}")
        item = self.queue.enqueue(
            QueueItemCreate(
                user_id=command.user_id,
                project_id=command.project_id,
                priority=command.priority,
            ),
        )
        logger.info("Queued scan %s for project %s", item.queue_id, command.project_id)
        return item

    def status(self, queue_id: str) -> QueueItemView:
        return self.queue.require(queue_id)

    def details(self, queue_id: str) -> QueueItemDetails:
        details = self.queue.get_details(queue_id)
        if details is None:
            return QueueItemDetails(item=self.queue.require(queue_id), events=[])
        return details

    def list_items(
        self,
        *,
        user_id: str | None = None,
        status: QueueStatus | None = None,
        limit: int | None = None,
    ) -> list[QueueItemView]:
        return self.queue.list_items(
            user_id=user_id,
            status=status,
            limit=limit or self.list_limit,
        )

    def pause(self, queue_id: str) -> QueueItemView:
        return self.queue.pause(queue_id=queue_id)

    def resume(self, queue_id: str) -> QueueItemView:
        return self.queue.resume(queue_id=queue_id)

    def cancel(self, queue_id: str) -> QueueItemView:
        """Cancel an item; a running one is stopped by its worker at the next chunk.

        Items no worker holds (paused, or pending after a resume or a ceiling
        handoff) may already have a scan and reservation; those are settled
        here for the work done.
        """

        previous = self.queue.require(queue_id)
        item = self.queue.cancel(queue_id=queue_id)
        if previous.status is not QueueStatus.RUNNING and item.scan_id is not None:
            scan = self.scans.get_scan(item.scan_id)
            if scan is not None and scan.status is ScanStatus.RUNNING:
                self.settlement.settle(
                    scan_id=item.scan_id,
                    reservation_id=item.reservation_id,
                    user_id=item.user_id,
                    status=ScanStatus.CANCELLED,
                    follow_up_enabled=scan.follow_up_depth > 0,
                    evaluation_model_id=self.evaluation_model_id,
                )
        return item

    def delete(self, queue_id: str) -> None:
        self.queue.delete(queue_id=queue_id)

    def reset_stuck(self, user_id: str) -> list[QueueItemView]:
        reset = self.queue.reset_stuck(user_id=user_id)
        for item in reset:
            self.settlement.abandon(item, reason=RESET_STUCK_MESSAGE)
        return reset

    def count_pending(self) -> int:
        return self.queue.count_pending()

    def enqueue_due_scans(self, *, now: datetime | None = None) -> ScheduleTickReport:
        """Queue every due scheduled project and advance its next run.

        The schedule is advanced even when the project already has an active
        item, so a long-running scan never causes a burst of catch-up runs.
        """

        current = now or utc_now()
        report = ScheduleTickReport()
        for project in self.scans.list_due_projects(now=current):
            if project.schedule is None:
                logger.warning("Project %s is due but has no schedule config", project.project_id)
                continue
            upcoming = next_run(project.schedule, project.schedule_timezone, current)
            if not self.scans.advance_schedule(
                project_id=project.project_id,
                expected_next_run=project.next_scheduled_scan_at,
                next_run=upcoming,
            ):
                continue
            report.advanced[project.project_id] = upcoming
            try:
                item = self.queue.enqueue(
                    QueueItemCreate(
                        user_id=project.user_id,
                        project_id=project.project_id,
                        is_scheduled=True,
                        scheduled_for=project.next_scheduled_scan_at,
                    ),
                )
            except AlreadyQueuedError:
                logger.info("Scheduled scan for %s skipped: already queued", project.project_id)
                report.already_queued.append(project.project_id)
                continue
            report.enqueued.append(item)
        if report.enqueued or report.already_queued:
            logger.info(
                "Schedule tick: %d enqueued, %d already queued",
                report.enqueued_count,
                len(report.already_queued),
            )
        return report
