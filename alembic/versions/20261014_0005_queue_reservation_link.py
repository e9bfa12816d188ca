"""Link queue items to the credit reservation held for their scan."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261014_0005"
down_revision = "20261012_0004"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Plain ADD COLUMN: a batch copy of scan_queue would drop the partial unique index.
    op.add_column("scan_queue", sa.Column("reservation_id", sa.String(), nullable=True))


def downgrade() -> None:
    op.drop_column("scan_queue", "reservation_id")
