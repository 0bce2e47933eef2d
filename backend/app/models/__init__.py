"""Expose SQLAlchemy models for convenient imports."""

from .customer import Customer, Order
from .gift_card import (
    GiftCard,
    GiftCardStatus,
    GiftCardTransaction,
    GiftCardTransactionType,
)
from .operational_metric import OperationalMetricEvent

__all__ = [
    "Customer",
    "GiftCard",
    "GiftCardStatus",
    "GiftCardTransaction",
    "GiftCardTransactionType",
    "OperationalMetricEvent",
    "Order",
]
