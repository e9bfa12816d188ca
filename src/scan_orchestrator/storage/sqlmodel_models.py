"""SQLModel ORM tables for scan orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    tier: str = Field(default="free", index=True)
    credit_balance_cents: int = 0
    free_scans_used: int = 0
    free_scans_month: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    domain: str
    brand_names_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    language: str = "en"
    selected_models_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    evaluation_model: str | None = None
    follow_up_enabled: bool = False
    follow_up_depth: int = 1
    schedule_enabled: bool = Field(default=False, index=True)
    schedule_frequency: str | None = None
    schedule_hour: int = 6
    schedule_day_of_week: int | None = None
    schedule_day_of_month: int | None = None
    schedule_timezone: str = "UTC"
    next_scheduled_scan_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProjectQuery(SQLModel, table=True):
    __tablename__ = "project_queries"  # type: ignore[bad-override]

    query_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    query_type: str = "informational"
    is_active: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScanQueueItem(SQLModel, table=True):
    __tablename__ = "scan_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_scan_queue_user_project_active",
            "user_id",
            "project_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
        Index("ix_scan_queue_claim_order", "status", "priority", "created_at"),
    )

    queue_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    scan_id: str | None = None
    reservation_id: str | None = None
    status: str = Field(index=True)
    priority: int = 0
    progress_current: int = 0
    progress_total: int = 0
    progress_message: str | None = None
    is_scheduled: bool = False
    scheduled_for: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    worker_id: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class ScanQueueEvent(SQLModel, table=True):
    __tablename__ = "scan_queue_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    queue_id: str = Field(
        sa_column=Column(
            ForeignKey("scan_queue.queue_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Scan(SQLModel, table=True):
    __tablename__ = "scans"  # type: ignore[bad-override]

    scan_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(index=True)
    queue_id: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    total_queries: int = 0
    total_results: int = 0
    total_cost_cents: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    overall_score: float | None = None
    avg_visibility: float | None = None
    avg_sentiment: float | None = None
    avg_ranking: float | None = None
    initial_score: float | None = None
    conversational_bonus: float | None = None
    brand_persistence: float | None = None
    sentiment_stability: float | None = None
    final_score: float | None = None
    follow_up_active: bool = False
    follow_up_depth: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class ScanResultRow(SQLModel, table=True):
    __tablename__ = "scan_results"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "scan_id",
            "query_id",
            "model_id",
            "follow_up_level",
            name="uq_scan_results_chain_level",
        ),
    )

    result_id: str = Field(primary_key=True)
    scan_id: str = Field(
        sa_column=Column(
            ForeignKey("scans.scan_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    query_id: str = Field(index=True)
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    model_id: str = Field(index=True)
    provider: str
    response_raw: str = Field(sa_column=Column(Text, nullable=False))
    metrics_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: int = 0
    evaluation_input_tokens: int = 0
    evaluation_output_tokens: int = 0
    evaluation_cost_cents: int = 0
    is_error: bool = False
    follow_up_level: int = 0
    follow_up_question: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    parent_result_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("scan_results.result_id", ondelete="CASCADE"),
            nullable=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditReservation(SQLModel, table=True):
    __tablename__ = "credit_reservations"  # type: ignore[bad-override]

    reservation_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    project_id: str | None = None
    scan_id: str | None = Field(default=None, index=True)
    amount_cents: int
    consumed_cents: int | None = None
    refunded_cents: int | None = None
    status: str = Field(index=True)
    reason: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class CreditTransaction(SQLModel, table=True):
    __tablename__ = "credit_transactions"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    transaction_type: str = Field(index=True)
    amount_cents: int
    balance_after_cents: int
    reference_type: str | None = None
    reference_id: str | None = None
    description: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MonthlyUsage(SQLModel, table=True):
    __tablename__ = "monthly_usage"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "month",
            "provider",
            "model_id",
            "usage_type",
            name="uq_monthly_usage_scope",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    month: str = Field(index=True)
    provider: str
    model_id: str
    usage_type: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_cents: int = 0
    call_count: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
