"""Record latency and outcome of gift card operations."""

from __future__ import annotations

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "20260130_0002"
down_revision = "20260130_0001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

GUID = sa.String(length=36).with_variant(postgresql.UUID(as_uuid=True), "postgresql")
TABLE = "operational_metric_events"


def upgrade() -> None:
    if sa.inspect(op.get_bind()).has_table(TABLE):
        return

    op.create_table(
        TABLE,
        sa.Column("event_id", GUID, primary_key=True),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("duration_ms", sa.Numeric(14, 3), nullable=True),
        sa.Column("labels", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "operational_metric_events_type_outcome_idx", TABLE, ["event_type", "outcome"]
    )
    op.create_index(f"ix_{TABLE}_recorded_at", TABLE, ["recorded_at"])


def downgrade() -> None:
    op.drop_index(f"ix_{TABLE}_recorded_at", table_name=TABLE)
    op.drop_index("operational_metric_events_type_outcome_idx", table_name=TABLE)
    op.drop_table(TABLE)
