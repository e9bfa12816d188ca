"""Runtime configuration for the scan queue, executor and credit ledger."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

PROBE_BACKENDS = frozenset({"echo", "http"})
EVALUATORS = frozenset({"llm", "keyword"})


@dataclass(slots=True)
class QueueSettings:
    """Stuck-job thresholds and claim behaviour."""

    hard_ceiling_seconds: int = 7_200
    zero_progress_seconds: int = 900
    stall_seconds: int = 900
    claim_max_retries: int = 5
    list_limit: int = 50


@dataclass(slots=True)
class ChunkSettings:
    """Chunk sizing and the per-invocation wall-clock budget."""

    max_queries_per_chunk: int = 2
    budget_seconds: float = 240.0
    per_operation_seconds: float = 20.0
    max_parallel_operations: int = 8
    wall_clock_ceiling_seconds: float = 290.0


@dataclass(slots=True)
class CreditSettings:
    """Reservation sizing and free-tier limits."""

    reservation_buffer: float = 1.2
    avg_input_tokens: int = 500
    avg_output_tokens: int = 1_000
    evaluation_multiplier: float = 1.5
    max_free_scans_per_month: int = 10


@dataclass(slots=True)
class PricingSettings:
    markup_percent: float = 0.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker trigger authorization and chaining target."""

    cron_secret: str | None = None
    environment: str = "production"
    base_url: str = "http://127.0.0.1:8000"
    trigger_timeout_seconds: float = 5.0
    chain_enabled: bool = True
    loop_idle_seconds: float = 5.0

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"


@dataclass(slots=True)
class ProbeSettings:
    """Provider gateway and evaluator selection."""

    backend: str = "echo"
    gateway_url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = 60.0
    evaluator: str = "llm"
    evaluation_model: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".scan_orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    chunk: ChunkSettings = field(default_factory=ChunkSettings)
    credits: CreditSettings = field(default_factory=CreditSettings)
    pricing: PricingSettings = field(default_factory=PricingSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    probe: ProbeSettings = field(default_factory=ProbeSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("SCAN_ORCHESTRATOR_DB_PATH", ".scan_orchestrator.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("SCAN_ORCHESTRATOR_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            queue=QueueSettings(
                hard_ceiling_seconds=int(
                    os.getenv("SCAN_ORCHESTRATOR_QUEUE_HARD_CEILING_SECONDS", "7200"),
                ),
                zero_progress_seconds=int(
                    os.getenv("SCAN_ORCHESTRATOR_QUEUE_ZERO_PROGRESS_SECONDS", "900"),
                ),
                stall_seconds=int(os.getenv("SCAN_ORCHESTRATOR_QUEUE_STALL_SECONDS", "900")),
                claim_max_retries=int(
                    os.getenv("SCAN_ORCHESTRATOR_QUEUE_CLAIM_MAX_RETRIES", "5"),
                ),
                list_limit=int(os.getenv("SCAN_ORCHESTRATOR_QUEUE_LIST_LIMIT", "50")),
            ),
            chunk=ChunkSettings(
                max_queries_per_chunk=int(
                    os.getenv("SCAN_ORCHESTRATOR_CHUNK_MAX_QUERIES", "2"),
                ),
                budget_seconds=float(
                    os.getenv("SCAN_ORCHESTRATOR_CHUNK_BUDGET_SECONDS", "240"),
                ),
                per_operation_seconds=float(
                    os.getenv("SCAN_ORCHESTRATOR_CHUNK_PER_OPERATION_SECONDS", "20"),
                ),
                max_parallel_operations=int(
                    os.getenv("SCAN_ORCHESTRATOR_CHUNK_MAX_PARALLEL", "8"),
                ),
                wall_clock_ceiling_seconds=float(
                    os.getenv("SCAN_ORCHESTRATOR_WALL_CLOCK_CEILING_SECONDS", "290"),
                ),
            ),
            credits=CreditSettings(
                reservation_buffer=float(
                    os.getenv("SCAN_ORCHESTRATOR_CREDITS_RESERVATION_BUFFER", "1.2"),
                ),
                avg_input_tokens=int(
                    os.getenv("SCAN_ORCHESTRATOR_CREDITS_AVG_INPUT_TOKENS", "500"),
                ),
                avg_output_tokens=int(
                    os.getenv("SCAN_ORCHESTRATOR_CREDITS_AVG_OUTPUT_TOKENS", "1000"),
                ),
                evaluation_multiplier=float(
                    os.getenv("SCAN_ORCHESTRATOR_CREDITS_EVALUATION_MULTIPLIER", "1.5"),
                ),
                max_free_scans_per_month=int(
                    os.getenv("SCAN_ORCHESTRATOR_MAX_FREE_SCANS_PER_MONTH", "10"),
                ),
            ),
            pricing=PricingSettings(
                markup_percent=float(os.getenv("SCAN_ORCHESTRATOR_PRICING_MARKUP_PERCENT", "0")),
            ),
            worker=WorkerSettings(
                cron_secret=os.getenv("SCAN_ORCHESTRATOR_CRON_SECRET") or None,
                environment=os.getenv("SCAN_ORCHESTRATOR_ENV", "production"),
                base_url=os.getenv("SCAN_ORCHESTRATOR_BASE_URL", "http://127.0.0.1:8000"),
                trigger_timeout_seconds=float(
                    os.getenv("SCAN_ORCHESTRATOR_TRIGGER_TIMEOUT_SECONDS", "5"),
                ),
                chain_enabled=_env_bool("SCAN_ORCHESTRATOR_CHAIN_ENABLED", default=True),
                loop_idle_seconds=float(
                    os.getenv("SCAN_ORCHESTRATOR_WORKER_LOOP_IDLE_SECONDS", "5"),
                ),
            ),
            probe=ProbeSettings(
                backend=os.getenv("SCAN_ORCHESTRATOR_PROBE_BACKEND", "echo").strip().lower(),
                gateway_url=os.getenv("SCAN_ORCHESTRATOR_GATEWAY_URL") or None,
                api_key=os.getenv("SCAN_ORCHESTRATOR_GATEWAY_API_KEY") or None,
                timeout_seconds=float(
                    os.getenv("SCAN_ORCHESTRATOR_PROBE_TIMEOUT_SECONDS", "60"),
                ),
                evaluator=os.getenv("SCAN_ORCHESTRATOR_EVALUATOR", "llm").strip().lower(),
                evaluation_model=os.getenv("SCAN_ORCHESTRATOR_EVALUATION_MODEL") or None,
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot run with these settings."""

        if self.queue.hard_ceiling_seconds <= 0:
            raise ValueError("SCAN_ORCHESTRATOR_QUEUE_HARD_CEILING_SECONDS must be > 0.")
        if self.queue.zero_progress_seconds <= 0:
            raise ValueError("SCAN_ORCHESTRATOR_QUEUE_ZERO_PROGRESS_SECONDS must be > 0.")
        if self.queue.stall_seconds <= 0:
            raise ValueError("SCAN_ORCHESTRATOR_QUEUE_STALL_SECONDS must be > 0.")
        if self.queue.claim_max_retries < 1:
            raise ValueError("SCAN_ORCHESTRATOR_QUEUE_CLAIM_MAX_RETRIES must be >= 1.")
        if self.chunk.max_queries_per_chunk < 1:
            raise ValueError("SCAN_ORCHESTRATOR_CHUNK_MAX_QUERIES must be >= 1.")
        if self.chunk.budget_seconds <= 0:
            raise ValueError("SCAN_ORCHESTRATOR_CHUNK_BUDGET_SECONDS must be > 0.")
        if self.chunk.per_operation_seconds <= 0:
            raise ValueError("SCAN_ORCHESTRATOR_CHUNK_PER_OPERATION_SECONDS must be > 0.")
        if self.chunk.max_parallel_operations < 1:
            raise ValueError("SCAN_ORCHESTRATOR_CHUNK_MAX_PARALLEL must be >= 1.")
        if self.chunk.wall_clock_ceiling_seconds <= 0:
            raise ValueError("SCAN_ORCHESTRATOR_WALL_CLOCK_CEILING_SECONDS must be > 0.")
        if self.credits.reservation_buffer < 1:
            raise ValueError("SCAN_ORCHESTRATOR_CREDITS_RESERVATION_BUFFER must be >= 1.")
        if self.credits.max_free_scans_per_month < 0:
            raise ValueError("SCAN_ORCHESTRATOR_MAX_FREE_SCANS_PER_MONTH must be >= 0.")
        if self.pricing.markup_percent < 0:
            raise ValueError("SCAN_ORCHESTRATOR_PRICING_MARKUP_PERCENT must be >= 0.")
        if self.probe.backend not in PROBE_BACKENDS:
            raise ValueError(
                "SCAN_ORCHESTRATOR_PROBE_BACKEND must be one of "
                f"{sorted(PROBE_BACKENDS)}, got {self.probe.backend!r}.",
            )
        if self.probe.evaluator not in EVALUATORS:
            raise ValueError(
                "SCAN_ORCHESTRATOR_EVALUATOR must be one of "
                f"{sorted(EVALUATORS)}, got {self.probe.evaluator!r}.",
            )
        if self.probe.backend == "http":
            if not self.probe.gateway_url:
                raise ValueError(
                    "SCAN_ORCHESTRATOR_GATEWAY_URL is required when "
                    "SCAN_ORCHESTRATOR_PROBE_BACKEND=http.",
                )
            _validate_http_url(self.probe.gateway_url, "SCAN_ORCHESTRATOR_GATEWAY_URL")

    def validate_for_api(self) -> None:
        """Raise configuration error if the HTTP surface cannot authorize triggers."""

        if not self.worker.is_development and not self.worker.cron_secret:
            raise ValueError(
                "SCAN_ORCHESTRATOR_CRON_SECRET is required outside development "
                "(set SCAN_ORCHESTRATOR_ENV=development to bypass).",
            )
        _validate_http_url(self.worker.base_url, "SCAN_ORCHESTRATOR_BASE_URL")
        if self.worker.trigger_timeout_seconds <= 0:
            raise ValueError("SCAN_ORCHESTRATOR_TRIGGER_TIMEOUT_SECONDS must be > 0.")


def _validate_http_url(value: str, env_name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {env_name}: {value!r}. "
            "Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
