"""Chunked probe execution within a worker's wall-clock budget."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from scan_orchestrator.config import ChunkSettings
from scan_orchestrator.orchestrator.backend.base import Message, ProbeClient
from scan_orchestrator.orchestrator.errors import PartialChunkFailure, ProviderError
from scan_orchestrator.orchestrator.evaluation import EvaluationClient, EvaluationOutcome
from scan_orchestrator.orchestrator.models import (
    ProjectView,
    QueryView,
    QueueStatus,
    ScanResultWrite,
)
from scan_orchestrator.orchestrator.pricing import PricingTable
from scan_orchestrator.orchestrator.prompts import (
    effective_follow_up_depth,
    follow_up_question,
    probe_system_prompt,
)
from scan_orchestrator.orchestrator.providers import ModelSpec
from scan_orchestrator.orchestrator.repository import QueueRepository
from scan_orchestrator.orchestrator.scans import ScanRepository

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    """Why a scan run ended before processing every chunk."""

    CANCELLED = "cancelled"
    PAUSED = "paused"
    LOST = "lost"
    WALL_CLOCK = "wall_clock"


@dataclass(slots=True)
class ScanContext:
    """Everything an operation needs to probe and persist one chain."""

    scan_id: str
    queue_id: str | None
    project: ProjectView
    follow_up_depth: int
    evaluator: EvaluationClient | None = None

    @property
    def turns_per_operation(self) -> int:
        return 1 + self.follow_up_depth


@dataclass(slots=True)
class OperationOutcome:
    success: bool
    levels: int = 0
    cost_cents: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(slots=True)
class ChunkOutcome:
    """Counters for one chunk; totals on the scan come from persisted rows."""

    success_count: int = 0
    failed_count: int = 0
    cost_cents: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: ChunkOutcome) -> None:
        self.success_count += other.success_count
        self.failed_count += other.failed_count
        self.cost_cents += other.cost_cents
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass(slots=True)
class ScanRunOutcome:
    chunks_planned: int
    chunks_run: int = 0
    chunks_failed: int = 0
    stop_reason: StopReason | None = None
    elapsed_seconds: float = 0.0
    totals: ChunkOutcome = field(default_factory=ChunkOutcome)

    @property
    def finished(self) -> bool:
        return self.stop_reason is None


def plan_chunks(
    query_count: int,
    model_count: int,
    *,
    max_queries_per_chunk: int,
    budget_seconds: float,
    per_operation_seconds: float,
) -> list[int]:
    """Split queries into chunk sizes that fit the per-invocation budget.

    >>> plan_chunks(7, 3, max_queries_per_chunk=2, budget_seconds=240, per_operation_seconds=20)
    [2, 2, 2, 1]
    """

    if query_count <= 0:
        return []
    per_query_seconds = per_operation_seconds * max(1, model_count)
    fitting = math.floor(budget_seconds / per_query_seconds) if per_query_seconds > 0 else 1
    size = max(1, min(max_queries_per_chunk, fitting))
    full, remainder = divmod(query_count, size)
    return [size] * full + ([remainder] if remainder else [])


class ChunkExecutor:
    """Run chunks of (query x model) operations and persist their chains."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        probe_client: ProbeClient,
        evaluator: EvaluationClient,
        pricing: PricingTable,
        scans: ScanRepository,
        queue: QueueRepository,
        settings: ChunkSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probe_client = probe_client
        self.evaluator = evaluator
        self.pricing = pricing
        self.scans = scans
        self.queue = queue
        self.settings = settings
        self.clock = clock

    def plan(self, *, query_count: int, model_count: int) -> list[int]:
        return plan_chunks(
            query_count,
            model_count,
            max_queries_per_chunk=self.settings.max_queries_per_chunk,
            budget_seconds=self.settings.budget_seconds,
            per_operation_seconds=self.settings.per_operation_seconds,
        )

    def run_scan(
        self,
        context: ScanContext,
        *,
        models: Sequence[ModelSpec],
        started_at: float | None = None,
        skip_pairs: set[tuple[str, str]] | None = None,
    ) -> ScanRunOutcome:
        """Run chunks sequentially, checking job status and elapsed time between them.

        `skip_pairs` holds (query_id, model_id) pairs already persisted by an
        earlier run of the same scan; they count as done and are not probed.
        """

        start = self.clock() if started_at is None else started_at
        queries = context.project.queries
        skip = skip_pairs or set()
        sizes = self.plan(query_count=len(queries), model_count=len(models))
        outcome = ScanRunOutcome(chunks_planned=len(sizes))
        operations_total = len(queries) * len(models) * context.turns_per_operation
        done = len(skip) * context.turns_per_operation
        self._report_progress(context, done, operations_total, "Scanning...")

        offset = 0
        for index, size in enumerate(sizes, start=1):
            chunk_queries = queries[offset : offset + size]
            offset += size

            stop_reason = self._stop_reason(
                context,
                start=start,
                enforce_ceiling=outcome.chunks_run > 0,
            )
            if stop_reason is not None:
                outcome.stop_reason = stop_reason
                logger.info(
                    "Scan %s stopped before chunk %d/%d: %s",
                    context.scan_id,
                    index,
                    len(sizes),
                    stop_reason.value,
                )
                break

            pending = [
                (query, model)
                for query in chunk_queries
                for model in models
                if (query.query_id, model.model_id) not in skip
            ]
            if pending:
                try:
                    chunk = self._run_chunk_with_retry(context, pending, index=index)
                except PartialChunkFailure as error:
                    logger.warning("%s; counting %d operations as failed", error, len(pending))
                    outcome.chunks_failed += 1
                    chunk = ChunkOutcome(failed_count=len(pending))
                outcome.totals.add(chunk)
                outcome.chunks_run += 1
            done += len(pending) * context.turns_per_operation
            self._report_progress(
                context,
                done,
                operations_total,
                f"Processed {offset}/{len(queries)} queries",
            )

        outcome.elapsed_seconds = self.clock() - start
        return outcome

    def run_chunk(
        self,
        context: ScanContext,
        queries: Sequence[QueryView],
        models: Sequence[ModelSpec],
    ) -> ChunkOutcome:
        """Probe every query against all models in parallel."""

        return self._run_operations(
            context,
            [(query, model) for query in queries for model in models],
        )

    def _run_chunk_with_retry(
        self,
        context: ScanContext,
        operations: list[tuple[QueryView, ModelSpec]],
        *,
        index: int,
    ) -> ChunkOutcome:
        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                return self._run_operations(context, operations)
            except Exception as error:  # noqa: BLE001
                logger.warning(
                    "Chunk %d of scan %s raised on attempt %d: %s",
                    index,
                    context.scan_id,
                    attempt,
                    error,
                )
                last_error = error
        raise PartialChunkFailure(
            f"Chunk {index} of scan {context.scan_id} failed twice: {last_error}",
        ) from last_error

    def _run_operations(
        self,
        context: ScanContext,
        operations: Sequence[tuple[QueryView, ModelSpec]],
    ) -> ChunkOutcome:
        chunk = ChunkOutcome()
        if not operations:
            return chunk
        workers = max(1, min(self.settings.max_parallel_operations, len(operations)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as pool:
            futures = [
                pool.submit(self.run_operation, context, query, model)
                for query, model in operations
            ]
            outcomes = [future.result() for future in futures]
        for result in outcomes:
            if result.success:
                chunk.success_count += 1
            else:
                chunk.failed_count += 1
            chunk.cost_cents += result.cost_cents
            chunk.input_tokens += result.input_tokens
            chunk.output_tokens += result.output_tokens
        return chunk

    def run_operation(
        self,
        context: ScanContext,
        query: QueryView,
        model: ModelSpec,
    ) -> OperationOutcome:
        """Probe one (query, model) pair through its follow-up chain and persist it.

        Provider failures are absorbed: a failed initial turn records an error
        row, a failed follow-up turn ends the chain at the last good level.
        """

        project = context.project
        system_prompt = probe_system_prompt(project.language)
        history: list[Message] = []
        results: list[ScanResultWrite] = []
        outcome = OperationOutcome(success=False)
        parent_id: str | None = None

        for level in range(context.turns_per_operation):
            prompt = (
                query.query_text
                if level == 0
                else follow_up_question(query.query_type, level, project.language)
            )
            try:
                response = self.probe_client.call(
                    model.model_id,
                    prompt,
                    history,
                    system_prompt=system_prompt,
                )
            except ProviderError as error:
                logger.warning(
                    "Probe %s/%s level %d failed: %s",
                    query.query_id,
                    model.model_id,
                    level,
                    error,
                )
                if level == 0:
                    results.append(
                        ScanResultWrite(
                            result_id=str(uuid4()),
                            scan_id=context.scan_id,
                            query_id=query.query_id,
                            query_text=query.query_text,
                            model_id=model.model_id,
                            provider=model.provider.value,
                            response_raw=str(error),
                            metrics=None,
                            input_tokens=0,
                            output_tokens=0,
                            cost_cents=0,
                            is_error=True,
                        ),
                    )
                break

            probe_cost = self.pricing.cost_cents(
                model.model_id,
                response.input_tokens,
                response.output_tokens,
            )
            evaluation = self._evaluate(response.content, context, query=query, model=model)
            result = ScanResultWrite(
                result_id=str(uuid4()),
                scan_id=context.scan_id,
                query_id=query.query_id,
                query_text=query.query_text,
                model_id=model.model_id,
                provider=model.provider.value,
                response_raw=response.content,
                metrics=evaluation.metrics if evaluation is not None else None,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                cost_cents=probe_cost,
                evaluation_input_tokens=evaluation.input_tokens if evaluation else 0,
                evaluation_output_tokens=evaluation.output_tokens if evaluation else 0,
                evaluation_cost_cents=evaluation.cost_cents if evaluation else 0,
                follow_up_level=level,
                follow_up_question=prompt if level > 0 else None,
                parent_result_id=parent_id,
            )
            results.append(result)
            parent_id = result.result_id
            history.append(Message(role="user", content=prompt))
            history.append(Message(role="assistant", content=response.content))
            outcome.success = True
            outcome.levels += 1
            outcome.cost_cents += result.cost_cents + result.evaluation_cost_cents
            outcome.input_tokens += result.input_tokens + result.evaluation_input_tokens
            outcome.output_tokens += result.output_tokens + result.evaluation_output_tokens

        self.scans.replace_chain(
            scan_id=context.scan_id,
            query_id=query.query_id,
            model_id=model.model_id,
            results=results,
        )
        return outcome

    def _evaluate(
        self,
        content: str,
        context: ScanContext,
        *,
        query: QueryView,
        model: ModelSpec,
    ) -> EvaluationOutcome | None:
        project = context.project
        evaluator = context.evaluator or self.evaluator
        try:
            outcome = evaluator.evaluate(content, project.brand_names, project.domain)
        except ProviderError as error:
            logger.warning(
                "Evaluation of %s/%s failed: %s",
                query.query_id,
                model.model_id,
                error,
            )
            return None
        if not outcome.charged:
            outcome.cost_cents = 0
            outcome.input_tokens = 0
            outcome.output_tokens = 0
        return outcome

    def _stop_reason(
        self,
        context: ScanContext,
        *,
        start: float,
        enforce_ceiling: bool = True,
    ) -> StopReason | None:
        if context.queue_id is not None:
            status = self.queue.status_of(context.queue_id)
            if status is QueueStatus.CANCELLED:
                return StopReason.CANCELLED
            if status is QueueStatus.PAUSED:
                return StopReason.PAUSED
            if status is not QueueStatus.RUNNING:
                return StopReason.LOST
        elapsed = self.clock() - start
        # Each invocation runs at least one chunk, so a resumed scan always advances.
        if enforce_ceiling and elapsed >= self.settings.wall_clock_ceiling_seconds:
            return StopReason.WALL_CLOCK
        return None

    def _report_progress(
        self,
        context: ScanContext,
        current: int,
        total: int,
        message: str,
    ) -> None:
        if context.queue_id is None:
            return
        self.queue.update_progress(
            queue_id=context.queue_id,
            current=current,
            total=total,
            message=message,
        )


def effective_depth(project: ProjectView) -> int:
    """Follow-up turns per operation for a project (0 when disabled)."""

    if not project.follow_up_enabled:
        return 0
    return effective_follow_up_depth(project.follow_up_depth)
