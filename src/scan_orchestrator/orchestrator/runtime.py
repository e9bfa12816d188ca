"""Wire settings into repositories, ledger, probe clients and workers."""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy.engine import Engine

from scan_orchestrator.config import Settings
from scan_orchestrator.orchestrator.backend import EchoProbeClient, HttpProbeClient, ProbeClient
from scan_orchestrator.orchestrator.chaining import WorkerChainTrigger
from scan_orchestrator.orchestrator.errors import UnknownModelError
from scan_orchestrator.orchestrator.evaluation import (
    EvaluationClient,
    KeywordEvaluationClient,
    LlmEvaluationClient,
)
from scan_orchestrator.orchestrator.executor import ChunkExecutor
from scan_orchestrator.orchestrator.ledger import CreditLedger
from scan_orchestrator.orchestrator.models import ProjectView
from scan_orchestrator.orchestrator.pricing import PricingTable
from scan_orchestrator.orchestrator.providers import cheapest_evaluation_model
from scan_orchestrator.orchestrator.repository import QueueRepository
from scan_orchestrator.orchestrator.scans import ScanRepository
from scan_orchestrator.orchestrator.services import QueueService
from scan_orchestrator.orchestrator.worker import ScanWorker
from scan_orchestrator.storage.alembic_runner import upgrade_head
from scan_orchestrator.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


def build_probe_client(settings: Settings) -> ProbeClient:
    probe = settings.probe
    if probe.backend == "http":
        if not probe.gateway_url:
            raise ValueError("SCAN_ORCHESTRATOR_GATEWAY_URL is required for the http backend")
        return HttpProbeClient(
            base_url=probe.gateway_url,
            api_key=probe.api_key,
            timeout_seconds=probe.timeout_seconds,
        )
    return EchoProbeClient()


@dataclass(slots=True)
class ScanRuntime:
    """Shared collaborators for one process: CLI command, API app or flow run."""

    settings: Settings
    engine: Engine
    probe_client: ProbeClient
    pricing: PricingTable
    queue: QueueRepository
    scans: ScanRepository
    ledger: CreditLedger
    evaluator: EvaluationClient
    _evaluators: dict[str, EvaluationClient] = field(default_factory=dict)

    def evaluator_for(self, project: ProjectView) -> EvaluationClient:
        """Project-level evaluation model override for the LLM evaluator."""

        model_id = project.evaluation_model
        if (
            not model_id
            or not isinstance(self.evaluator, LlmEvaluationClient)
            or model_id == self.evaluator.model_id
        ):
            return self.evaluator
        if model_id not in self._evaluators:
            try:
                self._evaluators[model_id] = LlmEvaluationClient(
                    probe_client=self.probe_client,
                    pricing=self.pricing,
                    model_id=model_id,
                )
            except UnknownModelError:
                logger.warning(
                    "Project %s names unknown evaluation model %s; using %s",
                    project.project_id,
                    model_id,
                    self.evaluator.model_id,
                )
                return self.evaluator
        return self._evaluators[model_id]

    def build_executor(self) -> ChunkExecutor:
        return ChunkExecutor(
            probe_client=self.probe_client,
            evaluator=self.evaluator,
            pricing=self.pricing,
            scans=self.scans,
            queue=self.queue,
            settings=self.settings.chunk,
        )

    def build_chain_trigger(self) -> WorkerChainTrigger | None:
        worker_settings = self.settings.worker
        if not worker_settings.chain_enabled:
            return None
        return WorkerChainTrigger(
            base_url=worker_settings.base_url,
            cron_secret=worker_settings.cron_secret,
            timeout_seconds=worker_settings.trigger_timeout_seconds,
        )

    def build_worker(
        self,
        *,
        worker_id: str | None = None,
        chain: bool = False,
    ) -> ScanWorker:
        return ScanWorker(
            queue=self.queue,
            scans=self.scans,
            ledger=self.ledger,
            executor=self.build_executor(),
            pricing=self.pricing,
            settings=self.settings,
            worker_id=worker_id or default_worker_id(),
            evaluator_for=self.evaluator_for,
            chain_trigger=self.build_chain_trigger() if chain else None,
        )

    def queue_service(self) -> QueueService:
        return QueueService(
            queue=self.queue,
            scans=self.scans,
            ledger=self.ledger,
            list_limit=self.settings.queue.list_limit,
            evaluation_model_id=self.evaluator.model_id,
        )

    def close(self) -> None:
        if isinstance(self.probe_client, HttpProbeClient):
            self.probe_client.close()
        self.engine.dispose()


def build_runtime(
    settings: Settings,
    *,
    probe_client: ProbeClient | None = None,
    init_schema: bool = True,
) -> ScanRuntime:
    """Apply migrations and assemble the runtime for `settings`."""

    if init_schema:
        upgrade_head(settings.db_path)
    engine = build_sqlite_engine(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    client = probe_client or build_probe_client(settings)
    pricing = PricingTable(markup_percent=settings.pricing.markup_percent)
    evaluator: EvaluationClient
    if settings.probe.evaluator == "keyword":
        evaluator = KeywordEvaluationClient()
    else:
        evaluator = LlmEvaluationClient(
            probe_client=client,
            pricing=pricing,
            model_id=settings.probe.evaluation_model or cheapest_evaluation_model().model_id,
        )
    return ScanRuntime(
        settings=settings,
        engine=engine,
        probe_client=client,
        pricing=pricing,
        queue=QueueRepository(engine, claim_max_retries=settings.queue.claim_max_retries),
        scans=ScanRepository(engine),
        ledger=CreditLedger(
            engine,
            max_free_scans_per_month=settings.credits.max_free_scans_per_month,
        ),
        evaluator=evaluator,
    )


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    probe_client: ProbeClient | None = None,
) -> Iterator[ScanRuntime]:
    runtime = build_runtime(settings, probe_client=probe_client)
    try:
        yield runtime
    finally:
        runtime.close()
