"""Errors raised by gift card operations."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class GiftCardServiceError(RuntimeError):
    """Base class for gift card failures. ``code`` is stable for API clients."""

    code = "gift_card_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(GiftCardServiceError):
    """Input was rejected before anything was written."""

    code = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class GiftCardUnavailableError(ValidationError):
    """The card exists but cannot be redeemed (disabled, depleted or expired)."""

    code = "gift_card_unavailable"


class InsufficientBalanceError(GiftCardServiceError):
    code = "insufficient_balance"

    def __init__(self, current_balance: Decimal, requested: Decimal) -> None:
        super().__init__(
            f"Cannot remove {requested:.2f}; the card only has {current_balance:.2f} available"
        )
        self.current_balance = current_balance
        self.requested = requested


class ZeroBalanceError(GiftCardServiceError):
    code = "zero_balance"


class GiftCardNotFoundError(GiftCardServiceError):
    code = "not_found"


class PersistenceError(GiftCardServiceError):
    """The database rejected the write; the message is passed through verbatim."""

    code = "persistence_error"


class ConcurrentUpdateError(PersistenceError):
    """Another writer changed the balance between the read and the write."""

    code = "concurrent_update"
