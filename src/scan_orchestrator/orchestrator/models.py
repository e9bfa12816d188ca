"""Domain models for the scan queue, scans and credit ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class QueueStatus(str, Enum):
    """Durable queue item lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED},
)
ACTIVE_STATUSES = frozenset({QueueStatus.PENDING, QueueStatus.RUNNING})


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    RELEASED = "released"


class UserTier(str, Enum):
    """Billing tier; only paid users hold real reservations."""

    FREE = "free"
    PAID = "paid"
    TEST = "test"
    ADMIN = "admin"


class TransactionType(str, Enum):
    TOP_UP = "top_up"
    BONUS = "bonus"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    RESERVATION = "reservation"
    USAGE = "usage"
    REFUND = "refund"
    RELEASE = "release"


class QueryType(str, Enum):
    INFORMATIONAL = "informational"
    TRANSACTIONAL = "transactional"
    COMPARISON = "comparison"


class ScheduleFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(slots=True)
class QueueItemCreate:
    """Input payload for enqueuing a scan."""

    user_id: str
    project_id: str
    priority: int = 0
    is_scheduled: bool = False
    scheduled_for: datetime | None = None
    queue_id: str | None = None


@dataclass(slots=True)
class QueueItemView:
    """Readable queue item view for API, CLI and worker logic."""

    queue_id: str
    user_id: str
    project_id: str
    scan_id: str | None
    reservation_id: str | None
    status: QueueStatus
    priority: int
    progress_current: int
    progress_total: int
    progress_message: str | None
    is_scheduled: bool
    scheduled_for: datetime | None
    worker_id: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class QueueEventView:
    event_id: int
    queue_id: str
    event_type: str
    status_from: QueueStatus | None
    status_to: QueueStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueItemDetails:
    item: QueueItemView
    events: list[QueueEventView]


@dataclass(slots=True)
class SweepReport:
    """Items force-failed by one stuck-job sweep."""

    failed_queue_ids: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)
    items: list[QueueItemView] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.failed_queue_ids)


@dataclass(slots=True)
class ScheduleConfig:
    """Recurring scan schedule attached to a project."""

    frequency: ScheduleFrequency
    hour: int
    day_of_week: int | None = None
    day_of_month: int | None = None


@dataclass(slots=True)
class QueryView:
    query_id: str
    query_text: str
    query_type: QueryType


@dataclass(slots=True)
class ProjectView:
    """Project settings the engine needs to run a scan."""

    project_id: str
    user_id: str
    name: str
    domain: str
    brand_names: list[str]
    language: str
    selected_models: list[str]
    evaluation_model: str | None
    follow_up_enabled: bool
    follow_up_depth: int
    schedule_enabled: bool
    schedule: ScheduleConfig | None
    schedule_timezone: str
    next_scheduled_scan_at: datetime | None
    queries: list[QueryView] = field(default_factory=list)


@dataclass(slots=True)
class ProjectCreate:
    """Seed payload for projects; full CRUD lives in the surrounding app."""

    user_id: str
    name: str
    domain: str
    brand_names: list[str]
    selected_models: list[str]
    queries: list[tuple[str, QueryType]] = field(default_factory=list)
    language: str = "en"
    evaluation_model: str | None = None
    follow_up_enabled: bool = False
    follow_up_depth: int = 1
    schedule: ScheduleConfig | None = None
    schedule_timezone: str = "UTC"
    next_scheduled_scan_at: datetime | None = None
    project_id: str | None = None


@dataclass(slots=True)
class ScanMetrics:
    """Evaluation scores for one response, all on a 0-100 scale."""

    visibility_score: float
    sentiment_score: float | None
    ranking_score: float
    recommendation_score: float

    @property
    def brand_mentioned(self) -> bool:
        return self.visibility_score > 0

    @classmethod
    def zero(cls) -> ScanMetrics:
        return cls(
            visibility_score=0,
            sentiment_score=None,
            ranking_score=0,
            recommendation_score=0,
        )

    def to_dict(self) -> dict[str, float | None]:
        return {
            "visibility_score": self.visibility_score,
            "sentiment_score": self.sentiment_score,
            "ranking_score": self.ranking_score,
            "recommendation_score": self.recommendation_score,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ScanMetrics:
        sentiment = payload.get("sentiment_score")
        return cls(
            visibility_score=float(payload.get("visibility_score") or 0),
            sentiment_score=float(sentiment) if sentiment is not None else None,
            ranking_score=float(payload.get("ranking_score") or 0),
            recommendation_score=float(payload.get("recommendation_score") or 0),
        )


@dataclass(slots=True)
class ScanResultWrite:
    """One persisted probe turn; `parent_result_id` links follow-up levels."""

    result_id: str
    scan_id: str
    query_id: str
    query_text: str
    model_id: str
    provider: str
    response_raw: str
    metrics: ScanMetrics | None
    input_tokens: int
    output_tokens: int
    cost_cents: int
    evaluation_input_tokens: int = 0
    evaluation_output_tokens: int = 0
    evaluation_cost_cents: int = 0
    is_error: bool = False
    follow_up_level: int = 0
    follow_up_question: str | None = None
    parent_result_id: str | None = None


@dataclass(slots=True)
class ScanResultView:
    result_id: str
    query_id: str
    model_id: str
    provider: str
    metrics: ScanMetrics | None
    cost_cents: int
    evaluation_cost_cents: int
    input_tokens: int
    output_tokens: int
    is_error: bool
    follow_up_level: int
    parent_result_id: str | None


@dataclass(slots=True)
class ScanTotals:
    total_results: int
    total_cost_cents: int
    total_input_tokens: int
    total_output_tokens: int


@dataclass(slots=True)
class ScanScores:
    """Final scores folded into the scan row on completion."""

    overall_score: float
    avg_visibility: float
    avg_sentiment: float | None
    avg_ranking: float | None
    initial_score: float
    conversational_bonus: float
    brand_persistence: float
    sentiment_stability: float
    final_score: float
    follow_up_active: bool


@dataclass(slots=True)
class ScanView:
    scan_id: str
    project_id: str
    user_id: str
    queue_id: str | None
    status: ScanStatus
    total_queries: int
    total_results: int
    total_cost_cents: int
    total_input_tokens: int
    total_output_tokens: int
    overall_score: float | None
    initial_score: float | None
    conversational_bonus: float | None
    brand_persistence: float | None
    sentiment_stability: float | None
    final_score: float | None
    follow_up_active: bool
    follow_up_depth: int
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class UsageRecord:
    """One probe or evaluation call folded into monthly usage."""

    provider: str
    model_id: str
    usage_type: str
    input_tokens: int
    output_tokens: int
    cost_cents: int


@dataclass(slots=True)
class ReservationView:
    reservation_id: str
    user_id: str
    project_id: str | None
    scan_id: str | None
    amount_cents: int
    consumed_cents: int | None
    refunded_cents: int | None
    status: ReservationStatus
    reason: str | None
    created_at: datetime
    resolved_at: datetime | None


@dataclass(slots=True)
class CreditTransactionView:
    transaction_id: int
    user_id: str
    transaction_type: TransactionType
    amount_cents: int
    balance_after_cents: int
    reference_type: str | None
    reference_id: str | None
    description: str | None
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
