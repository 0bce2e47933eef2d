"""Request and response schemas for the gift card ledger."""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.gift_card import GiftCardStatus, GiftCardTransactionType
from .common import PaginatedResponse


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class AdjustmentDirection(str, enum.Enum):
    ADD = "add"
    REMOVE = "remove"


class GiftCardStatusFilter(str, enum.Enum):
    """Status filter accepted by the listing endpoint."""

    ALL = "all"
    ACTIVE = "active"
    DISABLED = "disabled"
    DEPLETED = "depleted"


class GiftCardCreate(BaseModel):
    """Manual issuance of a new gift card.

    Amount rules (positive, at most two decimals) are enforced by the
    service so that callers outside HTTP get the same checks.
    """

    initial_balance: Decimal
    recipient_email: Optional[str] = Field(default=None, max_length=255)
    recipient_name: Optional[str] = Field(default=None, max_length=200)
    purchaser_email: Optional[str] = Field(default=None, max_length=255)
    message: Optional[str] = Field(default=None, max_length=1000)
    expires_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator(
        "recipient_email",
        "recipient_name",
        "purchaser_email",
        "message",
        "notes",
        mode="before",
    )
    @classmethod
    def _strip_optional(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)

    @field_validator("recipient_email", "purchaser_email")
    @classmethod
    def _lowercase_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if "@" not in value:
            raise ValueError("must be an email address")
        return value.lower()


class GiftCardAdjustmentCreate(BaseModel):
    direction: AdjustmentDirection
    amount: Decimal
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("notes", mode="before")
    @classmethod
    def _strip_notes(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class GiftCardStatusUpdate(BaseModel):
    """Requested status; only ``active`` and ``disabled`` are accepted."""

    status: str = Field(..., min_length=1, max_length=32)


class GiftCardRedemptionCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    amount: Decimal
    order_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("order_id", "notes", mode="before")
    @classmethod
    def _strip_optional(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class GiftCardRefundCreate(BaseModel):
    amount: Decimal
    order_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("order_id", "notes", mode="before")
    @classmethod
    def _strip_optional(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class GiftCardRead(BaseModel):
    id: str
    code: str
    initial_balance: Decimal
    current_balance: Decimal
    status: GiftCardStatus
    purchaser_email: Optional[str]
    recipient_email: Optional[str]
    recipient_name: Optional[str]
    message: Optional[str]
    purchased_at: Optional[datetime]
    expires_at: Optional[datetime]
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GiftCardListResponse(PaginatedResponse[GiftCardRead]):
    pass


class GiftCardTransactionRead(BaseModel):
    id: str
    gift_card_id: str
    sequence: int
    type: GiftCardTransactionType
    amount: Decimal
    balance_after: Decimal
    notes: Optional[str]
    order_id: Optional[str]
    order_number: Optional[str]
    created_by: Optional[str]
    created_by_name: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GiftCardDetail(BaseModel):
    card: GiftCardRead
    transactions: Sequence[GiftCardTransactionRead]


class GiftCardLookup(BaseModel):
    """Public view of a card used by checkout and the balance checker."""

    code: str
    current_balance: Decimal
    status: GiftCardStatus
    display_status: GiftCardStatus
    expires_at: Optional[datetime]
    is_expired: bool
    can_redeem: bool


class BalanceChange(BaseModel):
    """Outcome of a posted ledger entry."""

    gift_card_id: str
    transaction_id: str
    new_balance: Decimal
    status: GiftCardStatus
    replayed: bool = False


class GiftCardStats(BaseModel):
    total_active: int
    total_active_balance: Decimal
    total_depleted: int
    total_disabled: int
    total_issued: Decimal
    total_redeemed: Decimal


class LedgerMismatch(BaseModel):
    gift_card_id: str
    code: str
    issue: str
    stored_balance: Decimal
    replayed_balance: Decimal
    latest_balance_after: Optional[Decimal] = None


class LedgerConsistencyReport(BaseModel):
    cards_checked: int
    balance_mismatches: list[LedgerMismatch]
    out_of_range_balances: list[LedgerMismatch]
    cards_without_transactions: list[str]
    status_mismatches: list[LedgerMismatch]
