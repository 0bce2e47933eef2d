"""Gift cards and their append-only balance ledger."""

from __future__ import annotations

import enum
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_uuid


class GiftCardStatus(str, enum.Enum):
    """Lifecycle states of a gift card."""

    ACTIVE = "active"
    DISABLED = "disabled"
    DEPLETED = "depleted"


class GiftCardTransactionType(str, enum.Enum):
    """Kinds of balance movements recorded in the ledger."""

    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


GIFT_CARD_STATUS_ENUM = SAEnum(
    GiftCardStatus,
    name="gift_card_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)

GIFT_CARD_TRANSACTION_TYPE_ENUM = SAEnum(
    GiftCardTransactionType,
    name="gift_card_transaction_type_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class GiftCard(Base):
    """A stored-value card identified by a human readable code.

    ``current_balance`` and the automatic ``depleted`` status are owned by
    the ledger; application code must post a transaction instead of writing
    them directly.
    """

    __tablename__ = "gift_cards"
    __table_args__ = (
        CheckConstraint("initial_balance > 0", name="ck_gift_cards_initial_positive"),
        CheckConstraint("current_balance >= 0", name="ck_gift_cards_balance_non_negative"),
        CheckConstraint(
            "current_balance <= initial_balance",
            name="ck_gift_cards_balance_within_initial",
        ),
        Index("gift_cards_status_idx", "status"),
        Index("gift_cards_created_at_idx", "created_at"),
    )

    id = Column("gift_card_id", GUID(), primary_key=True, default=new_uuid)
    code = Column(String(32), nullable=False, unique=True, index=True)
    initial_balance = Column(Numeric(10, 2), nullable=False)
    current_balance = Column(Numeric(10, 2), nullable=False)
    status = Column(GIFT_CARD_STATUS_ENUM, nullable=False, default=GiftCardStatus.ACTIVE)
    # Set by an admin disable; survives depletion so a later credit restores ``disabled``.
    disabled_by_admin = Column(Boolean, nullable=False, default=False, server_default=false())
    purchaser_email = Column(String(255), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=True, index=True)
    recipient_name = Column(String(200), nullable=True)
    message = Column(Text, nullable=True)
    purchased_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(
        GUID(),
        ForeignKey("customers.customer_id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    creator = relationship("Customer", foreign_keys=[created_by])
    transactions = relationship(
        "GiftCardTransaction",
        back_populates="gift_card",
        cascade="all, delete-orphan",
        order_by="GiftCardTransaction.sequence.desc()",
    )

    @property
    def redeemed_amount(self) -> Decimal:
        return Decimal(self.initial_balance or 0) - Decimal(self.current_balance or 0)


class GiftCardTransaction(Base):
    """Single balance-affecting event. Rows are never updated or deleted."""

    __tablename__ = "gift_card_transactions"
    __table_args__ = (
        UniqueConstraint("gift_card_id", "sequence", name="gift_card_transactions_sequence_key"),
        UniqueConstraint(
            "gift_card_id",
            "idempotency_key",
            name="gift_card_transactions_idempotency_key",
        ),
        CheckConstraint("amount <> 0", name="ck_gift_card_transactions_amount_non_zero"),
        CheckConstraint(
            "balance_after >= 0",
            name="ck_gift_card_transactions_balance_non_negative",
        ),
        Index("gift_card_transactions_type_idx", "type"),
        Index("gift_card_transactions_created_at_idx", "created_at"),
    )

    id = Column("transaction_id", GUID(), primary_key=True, default=new_uuid)
    gift_card_id = Column(
        GUID(),
        ForeignKey("gift_cards.gift_card_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_id = Column(
        GUID(),
        ForeignKey("orders.order_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    balance_after = Column(Numeric(10, 2), nullable=False)
    type = Column(GIFT_CARD_TRANSACTION_TYPE_ENUM, nullable=False)
    notes = Column(Text, nullable=True)
    idempotency_key = Column(String(128), nullable=True)
    created_by = Column(
        GUID(),
        ForeignKey("customers.customer_id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    gift_card = relationship("GiftCard", back_populates="transactions")
    order = relationship("Order")
    creator = relationship("Customer", foreign_keys=[created_by])

    @property
    def order_number(self) -> str | None:
        return self.order.order_number if self.order is not None else None

    @property
    def created_by_name(self) -> str | None:
        return self.creator.display_name if self.creator is not None else None
