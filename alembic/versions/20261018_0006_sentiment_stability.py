"""Store how stable brand sentiment stays across follow-up levels."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0006"
down_revision = "20261014_0005"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Plain ADD COLUMN: a batch copy of scans would cascade into scan_results.
    op.add_column("scans", sa.Column("sentiment_stability", sa.Float(), nullable=True))


def downgrade() -> None:
    op.drop_column("scans", "sentiment_stability")
