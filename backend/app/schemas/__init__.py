"""Expose Pydantic schemas for convenient imports."""

from .auth import AdminLoginRequest, TokenResponse
from .common import OperationError, OperationResult, PaginatedResponse
from .gift_card import (
    AdjustmentDirection,
    BalanceChange,
    GiftCardAdjustmentCreate,
    GiftCardCreate,
    GiftCardDetail,
    GiftCardListResponse,
    GiftCardLookup,
    GiftCardRead,
    GiftCardRedemptionCreate,
    GiftCardRefundCreate,
    GiftCardStats,
    GiftCardStatusFilter,
    GiftCardStatusUpdate,
    GiftCardTransactionRead,
    LedgerConsistencyReport,
    LedgerMismatch,
)

__all__ = [
    "AdjustmentDirection",
    "AdminLoginRequest",
    "BalanceChange",
    "GiftCardAdjustmentCreate",
    "GiftCardCreate",
    "GiftCardDetail",
    "GiftCardListResponse",
    "GiftCardLookup",
    "GiftCardRead",
    "GiftCardRedemptionCreate",
    "GiftCardRefundCreate",
    "GiftCardStats",
    "GiftCardStatusFilter",
    "GiftCardStatusUpdate",
    "GiftCardTransactionRead",
    "LedgerConsistencyReport",
    "LedgerMismatch",
    "OperationError",
    "OperationResult",
    "PaginatedResponse",
    "TokenResponse",
]
