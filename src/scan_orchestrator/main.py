"""CLI entrypoint for scan-orchestrator."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import rich_click as click

from scan_orchestrator import __version__
from scan_orchestrator.orchestrator.controllers import (
    CreditsAddCommand,
    CreditsBalanceCommand,
    CreditsTransactionsCommand,
    QueueEnqueueCommand,
    QueueItemCommand,
    QueueListCommand,
    QueueResetStuckCommand,
    ScanCliController,
    ScheduleDescribeCommand,
    ScheduleTickCommand,
    UserAddCommand,
    WorkerRunCommand,
)
from scan_orchestrator.orchestrator.errors import ScanOrchestratorError
from scan_orchestrator.orchestrator.models import (
    QueueStatus,
    ScheduleFrequency,
    TransactionType,
    UserTier,
)

click.rich_click.USE_MARKDOWN = True
SCAN_CONTROLLER = ScanCliController()

DB_PATH_HELP = "SQLite DB path."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="scan-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine diagnostics.",
)
def scan_orchestrator(log_level: str) -> None:
    """Scan orchestration engine CLI.

    Queue visibility scans, run workers, fire the schedule tick and manage credits.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@scan_orchestrator.group()
def queue() -> None:
    """Scan queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Owner of the project.")
@click.option("--project-id", required=True, help="Project to scan.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
def queue_enqueue(db_path: Path | None, user_id: str, project_id: str, priority: int) -> None:
    """Queue a manual scan for a project."""

    _run(
        lambda: SCAN_CONTROLLER.enqueue(
            QueueEnqueueCommand(
                db_path=db_path,
                user_id=user_id,
                project_id=project_id,
                priority=priority,
            ),
        ),
    )


@queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--events/--no-events", default=False, show_default=True, help="Show transitions.")
@click.argument("queue_id")
def queue_status(db_path: Path | None, events: bool, queue_id: str) -> None:
    """Show status and progress of one queue item."""

    _run(
        lambda: SCAN_CONTROLLER.status(
            QueueItemCommand(db_path=db_path, queue_id=queue_id, show_events=events),
        ),
    )


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", default=None, help="Only items of this user.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in QueueStatus]),
    default=None,
    help="Only items in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum rows to display.",
)
def queue_list(
    db_path: Path | None,
    user_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List queue items, newest first."""

    _run(
        lambda: SCAN_CONTROLLER.list_items(
            QueueListCommand(db_path=db_path, user_id=user_id, status=status, limit=limit),
        ),
    )


@queue.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("queue_id")
def queue_cancel(db_path: Path | None, queue_id: str) -> None:
    """Cancel a pending, running or paused scan."""

    _run(lambda: SCAN_CONTROLLER.cancel(QueueItemCommand(db_path=db_path, queue_id=queue_id)))


@queue.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("queue_id")
def queue_pause(db_path: Path | None, queue_id: str) -> None:
    """Pause a running scan at the next chunk boundary."""

    _run(lambda: SCAN_CONTROLLER.pause(QueueItemCommand(db_path=db_path, queue_id=queue_id)))


@queue.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("queue_id")
def queue_resume(db_path: Path | None, queue_id: str) -> None:
    """Return a paused scan to the pending queue."""

    _run(lambda: SCAN_CONTROLLER.resume(QueueItemCommand(db_path=db_path, queue_id=queue_id)))


@queue.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("queue_id")
def queue_delete(db_path: Path | None, queue_id: str) -> None:
    """Delete a completed, failed or cancelled queue item."""

    _run(lambda: SCAN_CONTROLLER.delete(QueueItemCommand(db_path=db_path, queue_id=queue_id)))


@queue.command("reset-stuck")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="User whose running scans are reset.")
def queue_reset_stuck(db_path: Path | None, user_id: str) -> None:
    """Force-fail every running scan of a user and release their reservations."""

    _run(
        lambda: SCAN_CONTROLLER.reset_stuck(
            QueueResetStuckCommand(db_path=db_path, user_id=user_id),
        ),
    )


@scan_orchestrator.group()
def worker() -> None:
    """Scan worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process at most one item, or keep polling.",
)
@click.option(
    "--max-items",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many processed items.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop the loop after this many consecutive empty polls.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_items: int | None,
    max_idle_polls: int,
) -> None:
    """Claim and execute queued scans."""

    _run(
        lambda: SCAN_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_items=max_items,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@scan_orchestrator.group()
def schedule() -> None:
    """Recurring scan schedule commands."""


@schedule.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--process/--no-process",
    default=False,
    show_default=True,
    help="Run the enqueued scans in this process.",
)
def schedule_tick(db_path: Path | None, process: bool) -> None:
    """Enqueue every project whose next scheduled run is due."""

    _run(
        lambda: SCAN_CONTROLLER.schedule_tick(
            ScheduleTickCommand(db_path=db_path, process=process),
        ),
    )


@schedule.command("describe")
@click.option(
    "--frequency",
    type=click.Choice([value.value for value in ScheduleFrequency]),
    required=True,
    help="Daily, weekly or monthly.",
)
@click.option("--hour", type=click.IntRange(min=0, max=23), required=True, help="Local hour.")
@click.option(
    "--day-of-week",
    type=click.IntRange(min=0, max=6),
    default=None,
    help="Weekly schedules: 0 is Sunday.",
)
@click.option(
    "--day-of-month",
    type=click.IntRange(min=1, max=31),
    default=None,
    help="Monthly schedules: clamped to 28.",
)
@click.option("--timezone", default="UTC", show_default=True, help="IANA time zone name.")
def schedule_describe(
    frequency: str,
    hour: int,
    day_of_week: int | None,
    day_of_month: int | None,
    timezone: str,
) -> None:
    """Render a schedule and its next run time."""

    _run(
        lambda: SCAN_CONTROLLER.describe_schedule(
            ScheduleDescribeCommand(
                frequency=frequency,
                hour=hour,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                timezone=timezone,
            ),
        ),
    )


@schedule.command("next-run")
@click.option(
    "--frequency",
    type=click.Choice([value.value for value in ScheduleFrequency]),
    required=True,
    help="Daily, weekly or monthly.",
)
@click.option("--hour", type=click.IntRange(min=0, max=23), required=True, help="Local hour.")
@click.option("--day-of-week", type=click.IntRange(min=0, max=6), default=None)
@click.option("--day-of-month", type=click.IntRange(min=1, max=31), default=None)
@click.option("--timezone", default="UTC", show_default=True, help="IANA time zone name.")
@click.option(
    "--after",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M"]),
    default=None,
    help="Start from this UTC instant instead of now.",
)
@click.option("--count", type=click.IntRange(min=1, max=50), default=1, show_default=True)
def schedule_next_run(  # noqa: PLR0913
    frequency: str,
    hour: int,
    day_of_week: int | None,
    day_of_month: int | None,
    timezone: str,
    after: datetime | None,
    count: int,
) -> None:
    """List the next `count` run instants of a schedule."""

    _run(
        lambda: SCAN_CONTROLLER.next_runs(
            ScheduleDescribeCommand(
                frequency=frequency,
                hour=hour,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                timezone=timezone,
                now=after.replace(tzinfo=UTC) if after is not None else None,
                count=count,
            ),
        ),
    )


@scan_orchestrator.group("credits")
def credits_group() -> None:
    """Credit ledger commands."""


@credits_group.command("balance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("user_id")
def credits_balance(db_path: Path | None, user_id: str) -> None:
    """Show tier and balance of a user."""

    _run(
        lambda: SCAN_CONTROLLER.credits_balance(
            CreditsBalanceCommand(db_path=db_path, user_id=user_id),
        ),
    )


@credits_group.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--amount-cents", type=int, required=True, help="Signed amount in cents.")
@click.option(
    "--type",
    "transaction_type",
    type=click.Choice(
        [
            TransactionType.TOP_UP.value,
            TransactionType.BONUS.value,
            TransactionType.REFUND.value,
            TransactionType.ADMIN_ADJUSTMENT.value,
        ],
    ),
    default=TransactionType.TOP_UP.value,
    show_default=True,
    help="Ledger entry type.",
)
@click.option("--description", default=None, help="Free-form note stored with the entry.")
@click.argument("user_id")
def credits_add(
    db_path: Path | None,
    amount_cents: int,
    transaction_type: str,
    description: str | None,
    user_id: str,
) -> None:
    """Add (or, for adjustments, remove) credits."""

    _run(
        lambda: SCAN_CONTROLLER.credits_add(
            CreditsAddCommand(
                db_path=db_path,
                user_id=user_id,
                amount_cents=amount_cents,
                transaction_type=transaction_type,
                description=description,
            ),
        ),
    )


@credits_group.command("transactions")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Maximum rows to display.",
)
@click.argument("user_id")
def credits_transactions(db_path: Path | None, limit: int, user_id: str) -> None:
    """List ledger entries of a user, newest first."""

    _run(
        lambda: SCAN_CONTROLLER.credits_transactions(
            CreditsTransactionsCommand(db_path=db_path, user_id=user_id, limit=limit),
        ),
    )


@scan_orchestrator.group()
def user() -> None:
    """User account commands."""


@user.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--tier",
    type=click.Choice([tier.value for tier in UserTier]),
    default=UserTier.FREE.value,
    show_default=True,
    help="Account tier.",
)
@click.option("--display-name", default=None, help="Human readable name.")
@click.option(
    "--balance-cents",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Starting credit balance for a new user.",
)
@click.argument("user_id")
def user_add(
    db_path: Path | None,
    tier: str,
    display_name: str | None,
    balance_cents: int,
    user_id: str,
) -> None:
    """Create a user account if it does not exist."""

    _run(
        lambda: SCAN_CONTROLLER.add_user(
            UserAddCommand(
                db_path=db_path,
                user_id=user_id,
                tier=tier,
                display_name=display_name,
                balance_cents=balance_cents,
            ),
        ),
    )


@scan_orchestrator.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def db_init(db_path: Path | None) -> None:
    """Apply all schema migrations."""

    _run(lambda: SCAN_CONTROLLER.init_db(db_path))


@scan_orchestrator.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=8000, show_default=True)
def serve(db_path: Path | None, host: str, port: int) -> None:
    """Serve the queue API and worker trigger endpoints."""

    import uvicorn  # noqa: PLC0415

    from scan_orchestrator.api import create_app  # noqa: PLC0415
    from scan_orchestrator.config import Settings  # noqa: PLC0415

    try:
        app = create_app(Settings.from_env(db_path=db_path))
    except (ScanOrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    uvicorn.run(app, host=host, port=port)


@scan_orchestrator.group()
def flow() -> None:
    """Prefect deployment commands."""


@flow.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--cron", default="* * * * *", show_default=True, help="Tick schedule.")
def flow_serve(db_path: Path | None, cron: str) -> None:
    """Serve the scheduled-scan tick as a Prefect deployment."""

    from scan_orchestrator.orchestrator.flows import serve_tick  # noqa: PLC0415

    serve_tick(db_path=db_path, cron=cron)


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ScanOrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    scan_orchestrator()
