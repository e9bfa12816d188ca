"""Controllers for scan orchestrator CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from scan_orchestrator.config import Settings
from scan_orchestrator.orchestrator.models import (
    QueueItemView,
    QueueStatus,
    ScheduleConfig,
    ScheduleFrequency,
    TransactionType,
    UserTier,
)
from scan_orchestrator.orchestrator.runtime import open_runtime
from scan_orchestrator.orchestrator.scheduling import (
    describe_schedule,
    format_next_run,
    next_run,
    validate_schedule,
)
from scan_orchestrator.orchestrator.services import EnqueueScan
from scan_orchestrator.storage.alembic_runner import upgrade_head
from scan_orchestrator.storage.common import utc_now


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for a manual scan enqueue."""

    db_path: Path | None
    user_id: str
    project_id: str
    priority: int = 0


@dataclass(slots=True)
class QueueItemCommand:
    """CLI input for status/cancel/pause/resume/delete of one item."""

    db_path: Path | None
    queue_id: str
    show_events: bool = False


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    user_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueResetStuckCommand:
    db_path: Path | None
    user_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_items: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class ScheduleTickCommand:
    db_path: Path | None
    process: bool


@dataclass(slots=True)
class ScheduleDescribeCommand:
    """CLI input for rendering a schedule and its next run."""

    frequency: str
    hour: int
    day_of_week: int | None
    day_of_month: int | None
    timezone: str
    now: datetime | None = None
    count: int = 1


@dataclass(slots=True)
class UserAddCommand:
    db_path: Path | None
    user_id: str
    tier: str
    display_name: str | None
    balance_cents: int


@dataclass(slots=True)
class CreditsBalanceCommand:
    db_path: Path | None
    user_id: str


@dataclass(slots=True)
class CreditsAddCommand:
    db_path: Path | None
    user_id: str
    amount_cents: int
    transaction_type: str
    description: str | None


@dataclass(slots=True)
class CreditsTransactionsCommand:
    db_path: Path | None
    user_id: str
    limit: int


class ScanCliController:
    """Coordinates queue, worker, schedule and credit CLI operations."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            item = runtime.queue_service().enqueue_scan(
                EnqueueScan(
                    user_id=command.user_id,
                    project_id=command.project_id,
                    priority=command.priority,
                ),
            )
        return [
            f"Scan queued: queue_id={item.queue_id} project={item.project_id} "
            f"status={item.status.value}",
        ]

    def status(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            details = runtime.queue_service().details(command.queue_id)

        item = details.item
        lines = [
            f"queue_id={item.queue_id} status={item.status.value} priority={item.priority}",
            f"progress={item.progress_current}/{item.progress_total} "
            f"message={item.progress_message or '-'}",
            f"scan_id={item.scan_id or '-'} worker_id={item.worker_id or '-'} "
            f"scheduled={'yes' if item.is_scheduled else 'no'}",
        ]
        if item.error_message:
            lines.append(f"error={item.error_message}")
        if command.show_events:
            lines.append("Events:")
            lines.extend(
                f"- {event.created_at.isoformat()} {event.event_type} "
                f"{_status_label(event.status_from)} -> {_status_label(event.status_to)}"
                for event in details.events
            )
        return lines

    def list_items(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = QueueStatus(command.status) if command.status else None
        with open_runtime(settings) as runtime:
            items = runtime.queue_service().list_items(
                user_id=command.user_id,
                status=status,
                limit=command.limit,
            )
        if not items:
            return ["No queue items found."]
        return [_item_line(item) for item in items]

    def cancel(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            item = runtime.queue_service().cancel(command.queue_id)
        return [f"Scan cancelled: queue_id={item.queue_id}"]

    def pause(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            item = runtime.queue_service().pause(command.queue_id)
        return [f"Scan paused: queue_id={item.queue_id}"]

    def resume(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            item = runtime.queue_service().resume(command.queue_id)
        return [f"Scan resumed: queue_id={item.queue_id} status={item.status.value}"]

    def delete(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            runtime.queue_service().delete(command.queue_id)
        return [f"Queue item deleted: queue_id={command.queue_id}"]

    def reset_stuck(self, command: QueueResetStuckCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            reset = runtime.queue_service().reset_stuck(command.user_id)
        return [f"Reset {len(reset)} stuck scans for user {command.user_id}"] + [
            f"- {item.queue_id}" for item in reset
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with open_runtime(settings) as runtime:
            worker = runtime.build_worker()
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_items=command.max_items,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"paused={summary.paused} requeued={summary.requeued} swept={summary.swept} "
            f"idle_polls={summary.idle_polls}",
        ]

    def schedule_tick(self, command: ScheduleTickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            report = runtime.queue_service().enqueue_due_scans()
            lines = [
                f"Scheduled scans: enqueued={report.enqueued_count} "
                f"already_queued={len(report.already_queued)}",
            ]
            lines.extend(
                f"- {project_id} next run {value.isoformat()}"
                for project_id, value in sorted(report.advanced.items())
            )
            if command.process and report.enqueued:
                summary = runtime.build_worker().run_loop(max_items=report.enqueued_count)
                lines.append(
                    f"Processed {summary.processed} scans: succeeded={summary.succeeded} "
                    f"failed={summary.failed}",
                )
        return lines

    def describe_schedule(self, command: ScheduleDescribeCommand) -> list[str]:
        config = _schedule_config(command)
        upcoming = next_run(config, command.timezone, command.now or utc_now())
        return [
            describe_schedule(config),
            f"Next run: {format_next_run(upcoming, command.timezone)} ({upcoming.isoformat()})",
        ]

    def next_runs(self, command: ScheduleDescribeCommand) -> list[str]:
        config = _schedule_config(command)
        cursor = command.now or utc_now()
        lines: list[str] = []
        for _ in range(command.count):
            cursor = next_run(config, command.timezone, cursor)
            lines.append(f"{cursor.isoformat()}  {format_next_run(cursor, command.timezone)}")
        return lines

    def init_db(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        upgrade_head(settings.db_path)
        return [f"Database ready: {settings.db_path}"]

    def add_user(self, command: UserAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            runtime.scans.ensure_user(
                command.user_id,
                display_name=command.display_name,
                tier=UserTier(command.tier),
                credit_balance_cents=command.balance_cents,
            )
            tier = runtime.ledger.tier_of(command.user_id)
            balance = runtime.ledger.balance(command.user_id)
        return [f"User {command.user_id}: tier={tier.value} balance={_cents(balance)}"]

    def credits_balance(self, command: CreditsBalanceCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            tier = runtime.ledger.tier_of(command.user_id)
            balance = runtime.ledger.balance(command.user_id)
            free_left = runtime.ledger.free_scans_remaining(user_id=command.user_id)
        lines = [f"User {command.user_id}: tier={tier.value} balance={_cents(balance)}"]
        if tier is UserTier.FREE:
            lines.append(f"Free scans remaining this month: {free_left}")
        return lines

    def credits_add(self, command: CreditsAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            balance = runtime.ledger.add_credits(
                user_id=command.user_id,
                amount_cents=command.amount_cents,
                transaction_type=TransactionType(command.transaction_type),
                description=command.description,
            )
        return [
            f"Applied {command.transaction_type} of {_cents(command.amount_cents)} "
            f"to {command.user_id}; balance={_cents(balance)}",
        ]

    def credits_transactions(self, command: CreditsTransactionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            transactions = runtime.ledger.list_transactions(
                user_id=command.user_id,
                limit=command.limit,
            )
        if not transactions:
            return [f"No transactions for {command.user_id}."]
        return [
            f"{row.created_at.isoformat()} {row.transaction_type.value:<16} "
            f"{_cents(row.amount_cents):>10} balance={_cents(row.balance_after_cents)}"
            f"{' ' + row.description if row.description else ''}"
            for row in transactions
        ]


def _item_line(item: QueueItemView) -> str:
    return (
        f"{item.queue_id} {item.status.value:<9} project={item.project_id} "
        f"progress={item.progress_current}/{item.progress_total} "
        f"created={item.created_at.isoformat()}"
    )


def _status_label(status: QueueStatus | None) -> str:
    return status.value if status is not None else "-"


def _cents(value: int) -> str:
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value) // 100}.{abs(value) % 100:02d}"


def _schedule_config(command: ScheduleDescribeCommand) -> ScheduleConfig:
    config = ScheduleConfig(
        frequency=ScheduleFrequency(command.frequency),
        hour=command.hour,
        day_of_week=command.day_of_week,
        day_of_month=command.day_of_month,
    )
    validate_schedule(config)
    return config
