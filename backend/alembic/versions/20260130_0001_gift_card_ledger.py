"""Create gift cards, their transaction ledger and the referenced storefront tables."""

from __future__ import annotations

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "20260130_0001"
down_revision = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

GUID = sa.String(length=36).with_variant(postgresql.UUID(as_uuid=True), "postgresql")
GIFT_CARD_STATUSES = ("active", "disabled", "depleted")
TRANSACTION_TYPES = ("purchase", "redemption", "refund", "adjustment")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("customers"):
        op.create_table(
            "customers",
            sa.Column("customer_id", GUID, primary_key=True),
            sa.Column("email", sa.String(length=255), nullable=False, unique=True),
            sa.Column("first_name", sa.String(length=120), nullable=True),
            sa.Column("last_name", sa.String(length=120), nullable=True),
            _created_at(),
        )

    if not inspector.has_table("gift_cards"):
        op.create_table(
            "gift_cards",
            sa.Column("gift_card_id", GUID, primary_key=True),
            sa.Column("code", sa.String(length=32), nullable=False),
            sa.Column("initial_balance", sa.Numeric(10, 2), nullable=False),
            sa.Column("current_balance", sa.Numeric(10, 2), nullable=False),
            sa.Column(
                "status",
                sa.Enum(
                    *GIFT_CARD_STATUSES,
                    name="gift_card_status_enum",
                    native_enum=False,
                    create_constraint=True,
                ),
                nullable=False,
            ),
            sa.Column(
                "disabled_by_admin", sa.Boolean(), nullable=False, server_default=sa.false()
            ),
            sa.Column("purchaser_email", sa.String(length=255), nullable=True),
            sa.Column("recipient_email", sa.String(length=255), nullable=True),
            sa.Column("recipient_name", sa.String(length=200), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "created_by",
                GUID,
                sa.ForeignKey("customers.customer_id", ondelete="SET NULL"),
                nullable=True,
            ),
            _created_at(),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                server_default=sa.func.now(),
                nullable=False,
            ),
            sa.CheckConstraint("initial_balance > 0", name="ck_gift_cards_initial_positive"),
            sa.CheckConstraint(
                "current_balance >= 0", name="ck_gift_cards_balance_non_negative"
            ),
            sa.CheckConstraint(
                "current_balance <= initial_balance",
                name="ck_gift_cards_balance_within_initial",
            ),
        )
        op.create_index("ix_gift_cards_code", "gift_cards", ["code"], unique=True)
        op.create_index("ix_gift_cards_purchaser_email", "gift_cards", ["purchaser_email"])
        op.create_index("ix_gift_cards_recipient_email", "gift_cards", ["recipient_email"])
        op.create_index("gift_cards_status_idx", "gift_cards", ["status"])
        op.create_index("gift_cards_created_at_idx", "gift_cards", ["created_at"])

    if not inspector.has_table("orders"):
        op.create_table(
            "orders",
            sa.Column("order_id", GUID, primary_key=True),
            sa.Column("order_number", sa.String(length=40), nullable=False, unique=True),
            sa.Column(
                "customer_id",
                GUID,
                sa.ForeignKey("customers.customer_id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column(
                "gift_card_id",
                GUID,
                sa.ForeignKey("gift_cards.gift_card_id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column(
                "gift_card_amount",
                sa.Numeric(10, 2),
                nullable=False,
                server_default=sa.text("0"),
            ),
            _created_at(),
        )
        op.create_index("ix_orders_gift_card_id", "orders", ["gift_card_id"])

    if not inspector.has_table("gift_card_transactions"):
        op.create_table(
            "gift_card_transactions",
            sa.Column("transaction_id", GUID, primary_key=True),
            sa.Column(
                "gift_card_id",
                GUID,
                sa.ForeignKey("gift_cards.gift_card_id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column(
                "order_id",
                GUID,
                sa.ForeignKey("orders.order_id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False),
            sa.Column("balance_after", sa.Numeric(10, 2), nullable=False),
            sa.Column(
                "type",
                sa.Enum(
                    *TRANSACTION_TYPES,
                    name="gift_card_transaction_type_enum",
                    native_enum=False,
                    create_constraint=True,
                ),
                nullable=False,
            ),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=128), nullable=True),
            sa.Column(
                "created_by",
                GUID,
                sa.ForeignKey("customers.customer_id", ondelete="SET NULL"),
                nullable=True,
            ),
            _created_at(),
            sa.UniqueConstraint(
                "gift_card_id", "sequence", name="gift_card_transactions_sequence_key"
            ),
            sa.UniqueConstraint(
                "gift_card_id",
                "idempotency_key",
                name="gift_card_transactions_idempotency_key",
            ),
            sa.CheckConstraint(
                "amount <> 0", name="ck_gift_card_transactions_amount_non_zero"
            ),
            sa.CheckConstraint(
                "balance_after >= 0",
                name="ck_gift_card_transactions_balance_non_negative",
            ),
        )
        op.create_index(
            "ix_gift_card_transactions_gift_card_id",
            "gift_card_transactions",
            ["gift_card_id"],
        )
        op.create_index(
            "ix_gift_card_transactions_order_id", "gift_card_transactions", ["order_id"]
        )
        op.create_index("gift_card_transactions_type_idx", "gift_card_transactions", ["type"])
        op.create_index(
            "gift_card_transactions_created_at_idx",
            "gift_card_transactions",
            ["created_at"],
        )


def downgrade() -> None:
    op.drop_table("gift_card_transactions")
    op.drop_table("orders")
    op.drop_table("gift_cards")
    op.drop_table("customers")
