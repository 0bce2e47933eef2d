"""Storefront customers and orders referenced by the gift card ledger."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, func
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import GUID, new_uuid


class Customer(Base):
    """Storefront account. Admin users are customers with back-office access."""

    __tablename__ = "customers"

    id = Column("customer_id", GUID(), primary_key=True, default=new_uuid)
    email = Column(String(255), nullable=False, unique=True)
    first_name = Column(String(120), nullable=True)
    last_name = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else self.email


class Order(Base):
    """Storefront order; only the fields the ledger joins on are modelled."""

    __tablename__ = "orders"

    id = Column("order_id", GUID(), primary_key=True, default=new_uuid)
    order_number = Column(String(40), nullable=False, unique=True)
    customer_id = Column(
        GUID(),
        ForeignKey("customers.customer_id", ondelete="SET NULL"),
        nullable=True,
    )
    gift_card_id = Column(
        GUID(),
        ForeignKey("gift_cards.gift_card_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    gift_card_amount = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    customer = relationship("Customer")
