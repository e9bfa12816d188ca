"""Baseline schema: users, projects, queries and the scan queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261005_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False, server_default="free"),
        sa.Column("credit_balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_scans_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_scans_month", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("credit_balance_cents >= 0", name="ck_users_balance_non_negative"),
    )
    op.create_index("ix_users_user_id", "users", ["user_id"])
    op.create_index("ix_users_display_name", "users", ["display_name"])
    op.create_index("ix_users_tier", "users", ["tier"])

    op.create_table(
        "projects",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=False),
        sa.Column("brand_names_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("language", sa.String(), nullable=False, server_default="en"),
        sa.Column("selected_models_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("evaluation_model", sa.String(), nullable=True),
        sa.Column("follow_up_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("follow_up_depth", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("schedule_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("schedule_frequency", sa.String(), nullable=True),
        sa.Column("schedule_hour", sa.Integer(), nullable=False, server_default="6"),
        sa.Column("schedule_day_of_week", sa.Integer(), nullable=True),
        sa.Column("schedule_day_of_month", sa.Integer(), nullable=True),
        sa.Column("schedule_timezone", sa.String(), nullable=False, server_default="UTC"),
        sa.Column("next_scheduled_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("project_id"),
    )
    op.create_index("ix_projects_user_id", "projects", ["user_id"])
    op.create_index("ix_projects_schedule_enabled", "projects", ["schedule_enabled"])
    op.create_index("ix_projects_next_scheduled_scan_at", "projects", ["next_scheduled_scan_at"])

    op.create_table(
        "project_queries",
        sa.Column("query_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("query_text", sa.Text(), nullable=False),
        sa.Column("query_type", sa.String(), nullable=False, server_default="informational"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("query_id"),
    )
    op.create_index("ix_project_queries_project_id", "project_queries", ["project_id"])

    op.create_table(
        "scan_queue",
        sa.Column("queue_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("scan_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_message", sa.String(), nullable=True),
        sa.Column("is_scheduled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("queue_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'paused', 'completed', 'failed', 'cancelled')",
            name="ck_scan_queue_status",
        ),
        sa.CheckConstraint(
            "progress_current <= progress_total",
            name="ck_scan_queue_progress_bounds",
        ),
    )
    op.create_index("ix_scan_queue_user_id", "scan_queue", ["user_id"])
    op.create_index("ix_scan_queue_project_id", "scan_queue", ["project_id"])
    op.create_index("ix_scan_queue_status", "scan_queue", ["status"])
    op.create_index(
        "ix_scan_queue_claim_order",
        "scan_queue",
        ["status", "priority", "created_at"],
    )
    # At most one pending/running item per (user, project).
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_scan_queue_user_project_active
            ON scan_queue (user_id, project_id)
            WHERE status IN ('pending', 'running')
            """,
        ),
    )

    op.create_table(
        "scan_queue_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("queue_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["queue_id"], ["scan_queue.queue_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scan_queue_events_queue_id", "scan_queue_events", ["queue_id"])
    op.create_index("ix_scan_queue_events_user_id", "scan_queue_events", ["user_id"])
    op.create_index("ix_scan_queue_events_event_type", "scan_queue_events", ["event_type"])


def downgrade() -> None:
    op.drop_table("scan_queue_events")
    op.execute(sa.text("DROP INDEX IF EXISTS uq_scan_queue_user_project_active"))
    op.drop_table("scan_queue")
    op.drop_table("project_queries")
    op.drop_table("projects")
    op.drop_table("users")
