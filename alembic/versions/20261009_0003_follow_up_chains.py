"""Follow-up conversation chains and resilience score columns."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261009_0003"
down_revision = "20261005_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("scan_results") as batch_op:
        batch_op.add_column(
            sa.Column("follow_up_level", sa.Integer(), nullable=False, server_default="0"),
        )
        batch_op.add_column(sa.Column("follow_up_question", sa.Text(), nullable=True))
        batch_op.add_column(sa.Column("parent_result_id", sa.String(), nullable=True))
        batch_op.create_foreign_key(
            "fk_scan_results_parent_result_id",
            "scan_results",
            ["parent_result_id"],
            ["result_id"],
            ondelete="CASCADE",
        )
        batch_op.create_unique_constraint(
            "uq_scan_results_chain_level",
            ["scan_id", "query_id", "model_id", "follow_up_level"],
        )

    with op.batch_alter_table("scans") as batch_op:
        batch_op.add_column(sa.Column("initial_score", sa.Float(), nullable=True))
        batch_op.add_column(sa.Column("conversational_bonus", sa.Float(), nullable=True))
        batch_op.add_column(sa.Column("brand_persistence", sa.Float(), nullable=True))
        batch_op.add_column(sa.Column("final_score", sa.Float(), nullable=True))
        batch_op.add_column(
            sa.Column("follow_up_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        )
        batch_op.add_column(
            sa.Column("follow_up_depth", sa.Integer(), nullable=False, server_default="0"),
        )


def downgrade() -> None:
    with op.batch_alter_table("scans") as batch_op:
        batch_op.drop_column("follow_up_depth")
        batch_op.drop_column("follow_up_active")
        batch_op.drop_column("final_score")
        batch_op.drop_column("brand_persistence")
        batch_op.drop_column("conversational_bonus")
        batch_op.drop_column("initial_score")

    with op.batch_alter_table("scan_results") as batch_op:
        batch_op.drop_constraint("uq_scan_results_chain_level", type_="unique")
        batch_op.drop_constraint("fk_scan_results_parent_result_id", type_="foreignkey")
        batch_op.drop_column("parent_result_id")
        batch_op.drop_column("follow_up_question")
        batch_op.drop_column("follow_up_level")
