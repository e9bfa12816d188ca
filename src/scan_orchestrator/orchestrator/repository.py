"""Persistent scan queue backed by SQLModel + SQLite.

Every transition is one conditional UPDATE guarded by the expected current
status, so concurrent workers and user actions never overwrite each other;
the persisted `status` column is the only cross-worker lock.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from scan_orchestrator.orchestrator.errors import (
    AlreadyQueuedError,
    ClaimConflict,
    InvalidTransitionError,
    QueueItemNotFoundError,
    StuckJob,
)
from scan_orchestrator.orchestrator.models import (
    ACTIVE_STATUSES,
    QueueEventView,
    QueueItemCreate,
    QueueItemDetails,
    QueueItemView,
    QueueStatus,
    SweepReport,
)
from scan_orchestrator.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from scan_orchestrator.storage.sqlmodel_models import ScanQueueEvent, ScanQueueItem

logger = logging.getLogger(__name__)

WAITING_MESSAGE = "Waiting in queue..."
CANCELLED_MESSAGE = "Cancelled by user"
CANCEL_TERMINAL_MESSAGE = "Cannot cancel completed or failed scans"
RESET_STUCK_MESSAGE = "Scan was stuck and manually reset"
DEFAULT_CLAIM_RETRIES = 5


class QueueRepository:
    """Queue persistence facade: enqueue, claim, transitions and audit events."""

    def __init__(self, engine: Engine, *, claim_max_retries: int = DEFAULT_CLAIM_RETRIES) -> None:
        self.engine = engine
        self.claim_max_retries = max(1, claim_max_retries)

    def enqueue(self, payload: QueueItemCreate) -> QueueItemView:
        """Create a pending item; at most one pending/running item per project."""

        now = utc_now()
        queue_id = payload.queue_id or str(uuid4())
        with Session(self.engine) as session:
            row = ScanQueueItem(
                queue_id=queue_id,
                user_id=payload.user_id,
                project_id=payload.project_id,
                status=QueueStatus.PENDING.value,
                priority=payload.priority,
                progress_message=WAITING_MESSAGE,
                is_scheduled=payload.is_scheduled,
                scheduled_for=payload.scheduled_for,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                # The queue row must exist before its audit event references it.
                session.flush()
            except IntegrityError as error:
                session.rollback()
                if self.has_active_item(user_id=payload.user_id, project_id=payload.project_id):
                    raise AlreadyQueuedError(payload.project_id) from error
                raise
            self._add_event(
                session=session,
                queue_id=queue_id,
                user_id=payload.user_id,
                event_type="enqueued",
                status_from=None,
                status_to=QueueStatus.PENDING,
                details={
                    "project_id": payload.project_id,
                    "priority": payload.priority,
                    "is_scheduled": payload.is_scheduled,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_item_view(row)

    def has_active_item(self, *, user_id: str, project_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(ScanQueueItem.queue_id)
                .where(
                    ScanQueueItem.user_id == user_id,
                    ScanQueueItem.project_id == project_id,
                    col(ScanQueueItem.status).in_([status.value for status in ACTIVE_STATUSES]),
                )
                .limit(1),
            ).first()
            return row is not None

    def claim_next(self, *, worker_id: str) -> QueueItemView | None:
        """Atomically move the highest-priority, oldest pending item to `running`.

        A lost race re-selects the new head; a row taken by a competitor is
        no longer pending and is never retried.
        """

        for attempt in range(1, self.claim_max_retries + 1):
            try:
                return self._claim_once(worker_id=worker_id)
            except ClaimConflict:
                logger.info("Claim attempt %d lost to another worker, retrying", attempt)
        logger.warning(
            "Worker %s gave up claiming after %d conflicts",
            worker_id,
            self.claim_max_retries,
        )
        return None

    def _claim_once(self, *, worker_id: str) -> QueueItemView | None:
        now = utc_now()
        head = (
            select(ScanQueueItem.queue_id)
            .where(ScanQueueItem.status == QueueStatus.PENDING.value)
            .order_by(col(ScanQueueItem.priority).desc(), col(ScanQueueItem.created_at).asc())
            .limit(1)
            .scalar_subquery()
        )
        with Session(self.engine) as session:
            claimed_id = session.exec(
                sa_update(ScanQueueItem)
                .where(
                    col(ScanQueueItem.queue_id) == head,
                    col(ScanQueueItem.status) == QueueStatus.PENDING.value,
                )
                .values(
                    status=QueueStatus.RUNNING.value,
                    worker_id=worker_id,
                    started_at=func.coalesce(
                        col(ScanQueueItem.started_at),
                        to_db_datetime(now),
                    ),
                    updated_at=to_db_datetime(now),
                    completed_at=None,
                    error_message=None,
                    progress_message="Starting scan...",
                )
                .returning(col(ScanQueueItem.queue_id))
                .execution_options(synchronize_session=False),
            ).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                if self.count_pending() > 0:
                    raise ClaimConflict("Pending head was claimed concurrently.")
                return None

            claimed = session.exec(
                select(ScanQueueItem).where(ScanQueueItem.queue_id == claimed_id),
            ).one()
            self._add_event(
                session=session,
                queue_id=claimed.queue_id,
                user_id=claimed.user_id,
                event_type="claimed",
                status_from=QueueStatus.PENDING,
                status_to=QueueStatus.RUNNING,
                details={"worker_id": worker_id},
            )
            session.commit()
            session.refresh(claimed)
            logger.info("Worker %s claimed queue item %s", worker_id, claimed.queue_id)
            return _to_item_view(claimed)

    def sweep_stuck(
        self,
        *,
        hard_ceiling_seconds: int,
        zero_progress_seconds: int,
        stall_seconds: int,
        now: datetime | None = None,
    ) -> SweepReport:
        """Force-fail running items whose worker evidently died.

        Each transition is conditional on the row still being `running` with
        the `updated_at` that was inspected, so repeating a sweep is a no-op
        and an item that just reported progress is left alone.
        """

        current = to_utc_aware_datetime(now or utc_now())
        report = SweepReport()
        with Session(self.engine) as session:
            candidates = session.exec(
                select(ScanQueueItem).where(
                    ScanQueueItem.status == QueueStatus.RUNNING.value,
                ),
            ).all()

        for row in candidates:
            diagnostic = _stuck_diagnostic(
                row,
                now=current,
                hard_ceiling_seconds=hard_ceiling_seconds,
                zero_progress_seconds=zero_progress_seconds,
                stall_seconds=stall_seconds,
            )
            if diagnostic is None:
                continue
            failed = self._force_fail(
                row=row,
                message=str(diagnostic),
                event_type="stuck_job_failed",
                now=current,
            )
            if failed is not None:
                report.failed_queue_ids.append(failed.queue_id)
                report.reasons[failed.queue_id] = str(diagnostic)
                report.items.append(failed)
                logger.info("Sweep failed stuck queue item %s: %s", failed.queue_id, diagnostic)
        return report

    def reset_stuck(self, *, user_id: str) -> list[QueueItemView]:
        """Admin action: force-fail every running item of one user."""

        now = utc_now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(ScanQueueItem).where(
                    ScanQueueItem.user_id == user_id,
                    ScanQueueItem.status == QueueStatus.RUNNING.value,
                ),
            ).all()
        reset: list[QueueItemView] = []
        for row in rows:
            failed = self._force_fail(
                row=row,
                message=RESET_STUCK_MESSAGE,
                event_type="manual_reset",
                now=now,
            )
            if failed is not None:
                reset.append(failed)
        return reset

    def _force_fail(
        self,
        *,
        row: ScanQueueItem,
        message: str,
        event_type: str,
        now: datetime,
    ) -> QueueItemView | None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScanQueueItem)
                .where(
                    col(ScanQueueItem.queue_id) == row.queue_id,
                    col(ScanQueueItem.status) == QueueStatus.RUNNING.value,
                    col(ScanQueueItem.updated_at) == row.updated_at,
                )
                .values(
                    status=QueueStatus.FAILED.value,
                    error_message=message,
                    progress_message=message,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                queue_id=row.queue_id,
                user_id=row.user_id,
                event_type=event_type,
                status_from=QueueStatus.RUNNING,
                status_to=QueueStatus.FAILED,
                details={"message": message, "worker_id": row.worker_id},
            )
            session.commit()
            refreshed = session.exec(
                select(ScanQueueItem).where(ScanQueueItem.queue_id == row.queue_id),
            ).one()
            return _to_item_view(refreshed)

    def update_progress(
        self,
        *,
        queue_id: str,
        current: int,
        total: int,
        message: str | None = None,
    ) -> bool:
        """Record progress for a running item.

        Total never shrinks, current never decreases and never exceeds total.
        """

        new_total = func.max(col(ScanQueueItem.progress_total), max(0, total))
        values: dict[str, Any] = {
            "progress_total": new_total,
            "progress_current": func.min(
                func.max(col(ScanQueueItem.progress_current), max(0, current)),
                new_total,
            ),
            "updated_at": to_db_datetime(utc_now()),
        }
        if message is not None:
            values["progress_message"] = message
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScanQueueItem)
                .where(
                    col(ScanQueueItem.queue_id) == queue_id,
                    col(ScanQueueItem.status) == QueueStatus.RUNNING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def attach_scan(self, *, queue_id: str, scan_id: str) -> bool:
        return self._set_running_fields(queue_id=queue_id, scan_id=scan_id)

    def attach_reservation(self, *, queue_id: str, reservation_id: str) -> bool:
        return self._set_running_fields(queue_id=queue_id, reservation_id=reservation_id)

    def _set_running_fields(self, *, queue_id: str, **values: Any) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScanQueueItem)
                .where(
                    col(ScanQueueItem.queue_id) == queue_id,
                    col(ScanQueueItem.status) == QueueStatus.RUNNING.value,
                )
                .values(updated_at=to_db_datetime(utc_now()), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete(self, *, queue_id: str, message: str = "Scan completed") -> bool:
        """Mark a running item completed; progress snaps to its total."""

        return self._finish(
            queue_id=queue_id,
            status_to=QueueStatus.COMPLETED,
            event_type="completed",
            values={
                "progress_current": col(ScanQueueItem.progress_total),
                "progress_message": message,
            },
            details={"message": message},
        )

    def fail(self, *, queue_id: str, error_message: str) -> bool:
        """Mark a running item failed with a diagnostic message."""

        return self._finish(
            queue_id=queue_id,
            status_to=QueueStatus.FAILED,
            event_type="failed",
            values={"error_message": error_message, "progress_message": error_message},
            details={"error": error_message},
        )

    def requeue(self, *, queue_id: str, message: str) -> bool:
        """Hand a running item back to `pending` for the next worker invocation.

        Scan and reservation links, `started_at` and progress are kept, so the
        next claim resumes the same scan and the hard ceiling keeps counting.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScanQueueItem)
                .where(
                    col(ScanQueueItem.queue_id) == queue_id,
                    col(ScanQueueItem.status) == QueueStatus.RUNNING.value,
                )
                .values(
                    status=QueueStatus.PENDING.value,
                    worker_id=None,
                    progress_message=message,
                    updated_at=to_db_datetime(utc_now()),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info("Queue item %s left running before it could be requeued", queue_id)
                return False
            row = self._get_row(session=session, queue_id=queue_id)
            self._add_event(
                session=session,
                queue_id=queue_id,
                user_id=row.user_id,
                event_type="requeued",
                status_from=QueueStatus.RUNNING,
                status_to=QueueStatus.PENDING,
                details={"message": message},
            )
            session.commit()
            return True

    def _finish(
        self,
        *,
        queue_id: str,
        status_to: QueueStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, Any],
    ) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScanQueueItem)
                .where(
                    col(ScanQueueItem.queue_id) == queue_id,
                    col(ScanQueueItem.status) == QueueStatus.RUNNING.value,
                )
                .values(
                    status=status_to.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                    **values,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info(
                    "Queue item %s left running before it could be marked %s",
                    queue_id,
                    status_to.value,
                )
                return False
            row = self._get_row(session=session, queue_id=queue_id)
            self._add_event(
                session=session,
                queue_id=queue_id,
                user_id=row.user_id,
                event_type=event_type,
                status_from=QueueStatus.RUNNING,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return True

    def pause(self, *, queue_id: str) -> QueueItemView:
        return self._transition(
            queue_id=queue_id,
            allowed_from=(QueueStatus.RUNNING,),
            status_to=QueueStatus.PAUSED,
            event_type="paused",
            values={"progress_message": "Paused"},
            error_message="Only running scans can be paused",
        )

    def resume(self, *, queue_id: str) -> QueueItemView:
        """Re-queue a paused item; it keeps its scan and reservation links."""

        return self._transition(
            queue_id=queue_id,
            allowed_from=(QueueStatus.PAUSED,),
            status_to=QueueStatus.PENDING,
            event_type="resumed",
            values={"progress_message": WAITING_MESSAGE, "worker_id": None, "started_at": None},
            error_message="Only paused scans can be resumed",
        )

    def cancel(self, *, queue_id: str) -> QueueItemView:
        return self._transition(
            queue_id=queue_id,
            allowed_from=(QueueStatus.PENDING, QueueStatus.RUNNING, QueueStatus.PAUSED),
            status_to=QueueStatus.CANCELLED,
            event_type="cancelled",
            values={
                "error_message": CANCELLED_MESSAGE,
                "progress_message": CANCELLED_MESSAGE,
                "completed_at": to_db_datetime(utc_now()),
            },
            error_message=CANCEL_TERMINAL_MESSAGE,
        )

    def _transition(  # noqa: PLR0913
        self,
        *,
        queue_id: str,
        allowed_from: Iterable[QueueStatus],
        status_to: QueueStatus,
        event_type: str,
        values: dict[str, Any],
        error_message: str,
    ) -> QueueItemView:
        allowed = tuple(allowed_from)
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, queue_id=queue_id)
            status_from = QueueStatus(row.status)
            if status_from not in allowed:
                raise InvalidTransitionError(f"{error_message} (status={status_from.value}).")
            try:
                result = session.exec(
                    sa_update(ScanQueueItem)
                    .where(
                        col(ScanQueueItem.queue_id) == queue_id,
                        col(ScanQueueItem.status) == status_from.value,
                    )
                    .values(status=status_to.value, updated_at=to_db_datetime(now), **values),
                )
            except IntegrityError as error:
                session.rollback()
                raise AlreadyQueuedError(row.project_id) from error
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    f"Queue item {queue_id} changed concurrently; retry the action.",
                )
            self._add_event(
                session=session,
                queue_id=queue_id,
                user_id=row.user_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=None,
            )
            session.commit()
            refreshed = self._get_row(session=session, queue_id=queue_id)
            return _to_item_view(refreshed)

    def delete(self, *, queue_id: str) -> None:
        """Delete a terminal item together with its audit events."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, queue_id=queue_id)
            if not QueueStatus(row.status).is_terminal:
                raise InvalidTransitionError(
                    f"Only completed, failed or cancelled scans can be deleted "
                    f"(status={row.status}).",
                )
            session.exec(
                sa_delete(ScanQueueEvent).where(col(ScanQueueEvent.queue_id) == queue_id),
            )
            result = session.exec(
                sa_delete(ScanQueueItem).where(
                    col(ScanQueueItem.queue_id) == queue_id,
                    col(ScanQueueItem.status) == row.status,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(f"Queue item {queue_id} changed concurrently.")
            session.commit()

    def get(self, queue_id: str) -> QueueItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ScanQueueItem).where(ScanQueueItem.queue_id == queue_id),
            ).one_or_none()
            return _to_item_view(row) if row is not None else None

    def require(self, queue_id: str) -> QueueItemView:
        item = self.get(queue_id)
        if item is None:
            raise QueueItemNotFoundError(queue_id)
        return item

    def status_of(self, queue_id: str) -> QueueStatus | None:
        with Session(self.engine) as session:
            status = session.exec(
                select(ScanQueueItem.status).where(ScanQueueItem.queue_id == queue_id),
            ).one_or_none()
            return QueueStatus(status) if status is not None else None

    def get_details(self, queue_id: str) -> QueueItemDetails | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ScanQueueItem).where(ScanQueueItem.queue_id == queue_id),
            ).one_or_none()
            if row is None:
                return None
            events = session.exec(
                select(ScanQueueEvent)
                .where(ScanQueueEvent.queue_id == queue_id)
                .order_by(col(ScanQueueEvent.created_at).asc(), col(ScanQueueEvent.id).asc()),
            ).all()
            return QueueItemDetails(
                item=_to_item_view(row),
                events=[_to_event_view(event) for event in events],
            )

    def list_items(
        self,
        *,
        user_id: str | None = None,
        status: QueueStatus | None = None,
        limit: int = 50,
    ) -> list[QueueItemView]:
        with Session(self.engine) as session:
            statement = select(ScanQueueItem)
            if user_id is not None:
                statement = statement.where(ScanQueueItem.user_id == user_id)
            if status is not None:
                statement = statement.where(ScanQueueItem.status == status.value)
            rows = session.exec(
                statement.order_by(col(ScanQueueItem.created_at).desc()).limit(max(1, limit)),
            ).all()
            return [_to_item_view(row) for row in rows]

    def count_pending(self) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(ScanQueueItem)
                    .where(ScanQueueItem.status == QueueStatus.PENDING.value),
                ).one(),
            )

    def _get_row(self, *, session: Session, queue_id: str) -> ScanQueueItem:
        row = session.exec(
            select(ScanQueueItem).where(ScanQueueItem.queue_id == queue_id),
        ).one_or_none()
        if row is None:
            raise QueueItemNotFoundError(queue_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        queue_id: str,
        user_id: str,
        event_type: str,
        status_from: QueueStatus | None,
        status_to: QueueStatus | None,
        details: dict[str, Any] | None,
    ) -> None:
        session.add(
            ScanQueueEvent(
                queue_id=queue_id,
                user_id=user_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _stuck_diagnostic(
    row: ScanQueueItem,
    *,
    now: datetime,
    hard_ceiling_seconds: int,
    zero_progress_seconds: int,
    stall_seconds: int,
) -> StuckJob | None:
    started_at = optional_utc(row.started_at) or to_utc_aware_datetime(row.created_at)
    updated_at = to_utc_aware_datetime(row.updated_at)
    running_for = now - started_at
    if running_for > timedelta(seconds=hard_ceiling_seconds):
        return StuckJob(
            f"Scan exceeded the {hard_ceiling_seconds}s execution ceiling "
            f"(running for {int(running_for.total_seconds())}s); worker presumed dead.",
        )
    if row.progress_current == 0 and running_for > timedelta(seconds=zero_progress_seconds):
        return StuckJob(
            f"Scan made no progress within {zero_progress_seconds}s of starting; "
            "worker presumed dead.",
        )
    idle_for = now - updated_at
    if row.progress_current > 0 and idle_for > timedelta(seconds=stall_seconds):
        return StuckJob(
            f"Scan progress stalled at {row.progress_current}/{row.progress_total} "
            f"for {int(idle_for.total_seconds())}s; worker presumed dead.",
        )
    return None


def _to_item_view(row: ScanQueueItem) -> QueueItemView:
    return QueueItemView(
        queue_id=row.queue_id,
        user_id=row.user_id,
        project_id=row.project_id,
        scan_id=row.scan_id,
        reservation_id=row.reservation_id,
        status=QueueStatus(row.status),
        priority=row.priority,
        progress_current=row.progress_current,
        progress_total=row.progress_total,
        progress_message=row.progress_message,
        is_scheduled=row.is_scheduled,
        scheduled_for=optional_utc(row.scheduled_for),
        worker_id=row.worker_id,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_event_view(row: ScanQueueEvent) -> QueueEventView:
    return QueueEventView(
        event_id=row.id or 0,
        queue_id=row.queue_id,
        event_type=row.event_type,
        status_from=QueueStatus(row.status_from) if row.status_from is not None else None,
        status_to=QueueStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=json.loads(row.details_json) if row.details_json else {},
    )
