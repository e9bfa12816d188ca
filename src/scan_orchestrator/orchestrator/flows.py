"""Periodic backstop tick: enqueue due scheduled scans, then process the queue.

Runs as a Prefect ``@flow`` on a one-minute cron. Chained HTTP triggers keep
the queue moving between ticks; the tick only guarantees that a lost trigger
or a dead worker never stalls the queue for long.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from prefect import flow

from scan_orchestrator.config import Settings
from scan_orchestrator.orchestrator.runtime import open_runtime

logger = logging.getLogger(__name__)

TICK_CRON = "* * * * *"
TICK_DEPLOYMENT_NAME = "scan-orchestrator-tick"


@dataclass(slots=True)
class TickResult:
    enqueued: int
    already_queued: int
    processed: int
    remaining: int
    queue_id: str | None = None
    message: str | None = None


@flow(name="scan_tick")
def scan_tick_flow(
    *,
    db_path: Path | None = None,
    now: datetime | None = None,
    process: bool = True,
) -> TickResult:
    """Enqueue due scheduled scans and run one sweep-claim-process cycle."""

    settings = Settings.from_env(db_path=db_path)
    with open_runtime(settings) as runtime:
        report = runtime.queue_service().enqueue_due_scans(now=now)
        processed = 0
        queue_id = None
        message = None
        if process:
            summary = runtime.build_worker(chain=True).run_once()
            processed = summary.processed
            queue_id = summary.queue_id
            message = summary.message
        remaining = runtime.queue.count_pending()

    logger.info(
        "Tick: %d scheduled scans enqueued, %d processed, %d pending",
        report.enqueued_count,
        processed,
        remaining,
    )
    return TickResult(
        enqueued=report.enqueued_count,
        already_queued=len(report.already_queued),
        processed=processed,
        remaining=remaining,
        queue_id=queue_id,
        message=message,
    )


def serve_tick(*, db_path: Path | None = None, cron: str = TICK_CRON) -> None:
    """Serve the tick flow as a long-running Prefect deployment."""

    parameters: dict[str, object] = {}
    if db_path is not None:
        parameters["db_path"] = str(db_path)
    scan_tick_flow.serve(name=TICK_DEPLOYMENT_NAME, cron=cron, parameters=parameters)
