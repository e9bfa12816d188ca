"""Queue worker: sweep, claim one scan, run it in chunks and settle its credits."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from scan_orchestrator.config import Settings
from scan_orchestrator.orchestrator.chaining import WorkerChainTrigger
from scan_orchestrator.orchestrator.errors import (
    InsufficientCredits,
    ReservationCreationFailure,
    ScanCreationFailure,
    UnknownModelError,
)
from scan_orchestrator.orchestrator.evaluation import EvaluationClient
from scan_orchestrator.orchestrator.executor import (
    ChunkExecutor,
    ScanContext,
    ScanRunOutcome,
    StopReason,
    effective_depth,
)
from scan_orchestrator.orchestrator.ledger import CreditLedger
from scan_orchestrator.orchestrator.models import (
    ProjectView,
    QueueItemView,
    ScanStatus,
    SweepReport,
)
from scan_orchestrator.orchestrator.pricing import PricingTable, reservation_amount_cents
from scan_orchestrator.orchestrator.providers import ModelSpec, resolve_models
from scan_orchestrator.orchestrator.repository import QueueRepository
from scan_orchestrator.orchestrator.scans import ScanRepository
from scan_orchestrator.orchestrator.settlement import ScanSettlement

logger = logging.getLogger(__name__)

ALL_OPERATIONS_FAILED_MESSAGE = "All probe operations failed"


class JobResult(str, Enum):
    """How one claimed item left the worker."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    REQUEUED = "requeued"
    LOST = "lost"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI and API reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    paused: int = 0
    requeued: int = 0
    swept: int = 0
    idle_polls: int = 0
    queue_id: str | None = None
    message: str | None = None

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.paused += other.paused
        self.requeued += other.requeued
        self.swept += other.swept
        self.idle_polls += other.idle_polls
        if other.queue_id is not None:
            self.queue_id = other.queue_id
            self.message = other.message


class ScanWorker:
    """Stateless scan worker; the persisted queue status is its only lock."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: QueueRepository,
        scans: ScanRepository,
        ledger: CreditLedger,
        executor: ChunkExecutor,
        pricing: PricingTable,
        settings: Settings,
        worker_id: str,
        evaluator_for: Callable[[ProjectView], EvaluationClient] | None = None,
        chain_trigger: WorkerChainTrigger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue = queue
        self.scans = scans
        self.ledger = ledger
        self.executor = executor
        self.pricing = pricing
        self.settings = settings
        self.worker_id = worker_id
        self.evaluator_for = evaluator_for
        self.chain_trigger = chain_trigger
        self.clock = clock
        self.settlement = ScanSettlement(scans=scans, ledger=ledger)
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Sweep stuck items, then claim and process at most one queue item."""

        started_at = self.clock()
        summary = WorkerRunSummary()
        summary.swept = self.sweep().count
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        item = self.queue.claim_next(worker_id=self.worker_id)
        if item is None:
            summary.idle_polls = 1
            summary.message = "No pending scans"
            return summary

        summary.processed = 1
        summary.queue_id = item.queue_id
        try:
            result = self.process(item, started_at=started_at)
        except Exception as error:  # noqa: BLE001
            logger.exception("Queue item %s crashed the worker", item.queue_id)
            self._abort(item, f"Scan failed: {error}")
            result = JobResult.FAILED

        summary.message = f"Scan {result.value}"
        if result is JobResult.COMPLETED:
            summary.succeeded = 1
        elif result is JobResult.FAILED:
            summary.failed = 1
        elif result is JobResult.CANCELLED:
            summary.cancelled = 1
        elif result is JobResult.PAUSED:
            summary.paused = 1
        elif result is JobResult.REQUEUED:
            summary.requeued = 1
        self._chain_next()
        return summary

    def run_loop(
        self,
        *,
        max_items: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Process items until the queue stays idle or `max_items` is reached."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_items is not None and aggregate.processed >= max_items:
                    break
                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if consecutive_idle >= max_idle_polls:
                    break
                self._sleep_with_stop(self.settings.worker.loop_idle_seconds)
        return aggregate

    def sweep(self) -> SweepReport:
        """Force-fail stuck items, failing their scans and releasing their credits."""

        queue_settings = self.settings.queue
        report = self.queue.sweep_stuck(
            hard_ceiling_seconds=queue_settings.hard_ceiling_seconds,
            zero_progress_seconds=queue_settings.zero_progress_seconds,
            stall_seconds=queue_settings.stall_seconds,
        )
        for item in report.items:
            self.settlement.abandon(item, reason=report.reasons.get(item.queue_id, "stuck"))
        return report

    def process(self, item: QueueItemView, *, started_at: float) -> JobResult:
        project = self.scans.get_project(item.project_id)
        if project is None:
            return self._fail(item, f"Project not found: {item.project_id}")
        if not project.queries:
            return self._fail(item, "Project has no active queries")
        if not project.selected_models:
            return self._fail(item, "Project has no selected models")
        try:
            models = resolve_models(project.selected_models)
        except UnknownModelError as error:
            return self._fail(item, str(error))

        depth = effective_depth(project)
        reservation_id = item.reservation_id
        if reservation_id is None:
            try:
                reservation_id = self._reserve(project, models=models, depth=depth)
            except (InsufficientCredits, ReservationCreationFailure) as error:
                return self._fail(item, str(error))
            if not self.queue.attach_reservation(
                queue_id=item.queue_id,
                reservation_id=reservation_id,
            ):
                self.ledger.release(
                    reservation_id=reservation_id,
                    reason="Queue item left running before the scan started",
                )
                return JobResult.LOST

        scan_id = item.scan_id
        if scan_id is None:
            try:
                scan = self.scans.create_scan(
                    project=project,
                    queue_id=item.queue_id,
                    total_queries=len(project.queries),
                    follow_up_depth=depth,
                )
            except ScanCreationFailure as error:
                self.ledger.release(reservation_id=reservation_id, reason=str(error))
                return self._fail(item, str(error))
            scan_id = scan.scan_id
            self.ledger.attach_scan(reservation_id=reservation_id, scan_id=scan_id)
            self.queue.attach_scan(queue_id=item.queue_id, scan_id=scan_id)
            logger.info("Created scan %s for queue item %s", scan_id, item.queue_id)
        else:
            logger.info("Resuming scan %s for queue item %s", scan_id, item.queue_id)

        context = ScanContext(
            scan_id=scan_id,
            queue_id=item.queue_id,
            project=project,
            follow_up_depth=depth,
            evaluator=self.evaluator_for(project) if self.evaluator_for else None,
        )
        run = self.executor.run_scan(
            context,
            models=models,
            started_at=started_at,
            skip_pairs=self.scans.completed_pairs(scan_id),
        )
        return self._settle(item, context=context, run=run, reservation_id=reservation_id)

    def _reserve(self, project: ProjectView, *, models: list[ModelSpec], depth: int) -> str:
        credit_settings = self.settings.credits
        estimate = self.pricing.estimate_scan_cost_cents(
            model_ids=[model.model_id for model in models],
            query_count=len(project.queries),
            turns_per_operation=1 + depth,
            avg_input_tokens=credit_settings.avg_input_tokens,
            avg_output_tokens=credit_settings.avg_output_tokens,
            evaluation_multiplier=credit_settings.evaluation_multiplier,
        )
        return self.ledger.reserve(
            user_id=project.user_id,
            amount_cents=reservation_amount_cents(estimate, credit_settings.reservation_buffer),
            project_id=project.project_id,
        )

    def _settle(
        self,
        item: QueueItemView,
        *,
        context: ScanContext,
        run: ScanRunOutcome,
        reservation_id: str,
    ) -> JobResult:
        scan_id = context.scan_id
        if run.stop_reason is StopReason.PAUSED:
            logger.info("Queue item %s paused; scan %s stays open", item.queue_id, scan_id)
            return JobResult.PAUSED
        if run.stop_reason is StopReason.LOST:
            logger.warning(
                "Queue item %s was taken away from worker %s",
                item.queue_id,
                self.worker_id,
            )
            self.scans.set_scan_status(scan_id=scan_id, status=ScanStatus.FAILED)
            return JobResult.LOST
        if run.stop_reason is StopReason.WALL_CLOCK:
            return self._handoff(item, run=run)

        if run.stop_reason is StopReason.CANCELLED:
            status = ScanStatus.CANCELLED
            failure = None
        elif not any(not result.is_error for result in self.scans.list_results(scan_id)):
            status = ScanStatus.FAILED
            failure = ALL_OPERATIONS_FAILED_MESSAGE
        else:
            status = ScanStatus.COMPLETED
            failure = None

        evaluator = context.evaluator or self.executor.evaluator
        settled = self.settlement.settle(
            scan_id=scan_id,
            reservation_id=reservation_id,
            user_id=context.project.user_id,
            status=status,
            follow_up_enabled=context.follow_up_depth > 0,
            evaluation_model_id=evaluator.model_id,
        )

        if status is ScanStatus.CANCELLED:
            logger.info("Scan %s cancelled after %d chunks", scan_id, run.chunks_run)
            return JobResult.CANCELLED
        if failure is not None:
            logger.warning("Queue item %s: %s", item.queue_id, failure)
            self.queue.fail(queue_id=item.queue_id, error_message=failure)
            return JobResult.FAILED
        if not self.queue.complete(queue_id=item.queue_id):
            return JobResult.LOST
        logger.info(
            "Scan %s completed: %d results, %d cents, final score %.1f",
            scan_id,
            settled.totals.total_results,
            settled.totals.total_cost_cents,
            settled.scores.final_score,
        )
        return JobResult.COMPLETED

    def _handoff(self, item: QueueItemView, *, run: ScanRunOutcome) -> JobResult:
        message = (
            f"Worker ceiling of {self.settings.chunk.wall_clock_ceiling_seconds:g}s reached "
            f"after {run.chunks_run} chunk(s); continuing in the next worker"
        )
        if not self.queue.requeue(queue_id=item.queue_id, message=message):
            return JobResult.LOST
        logger.info("Queue item %s: %s", item.queue_id, message)
        return JobResult.REQUEUED

    def _fail(self, item: QueueItemView, message: str) -> JobResult:
        logger.warning("Failing queue item %s: %s", item.queue_id, message)
        self.queue.fail(queue_id=item.queue_id, error_message=message)
        return JobResult.FAILED

    def _abort(self, item: QueueItemView, message: str) -> None:
        current = self.queue.get(item.queue_id)
        if current is None:
            return
        if self.queue.fail(queue_id=item.queue_id, error_message=message):
            self.settlement.abandon(current, reason=message)

    def _chain_next(self) -> None:
        if self.chain_trigger is None:
            return
        remaining = self.queue.count_pending()
        if remaining:
            logger.info("%d scans still pending; chaining next worker", remaining)
            self.chain_trigger.fire()

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            logger.info("Worker %s received signal %d; stopping", self.worker_id, signum)
            self.request_stop()

        try:
            previous = {
                sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)
            }
        except ValueError:
            # Only the main thread may install handlers.
            yield
            return
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
