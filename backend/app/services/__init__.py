"""Service layer encapsulating business logic for API routers."""

from .gift_card_codes import CodeFormat, generate_code, normalize_code
from .gift_card_consistency import GiftCardConsistencyService, LedgerConsistencySnapshot
from .gift_card_errors import (
    ConcurrentUpdateError,
    GiftCardNotFoundError,
    GiftCardServiceError,
    GiftCardUnavailableError,
    InsufficientBalanceError,
    PersistenceError,
    ValidationError,
    ZeroBalanceError,
)
from .gift_card_ledger import post_entry
from .gift_cards import GiftCardService
from .observability import MetricOutcome, ObservabilityService

__all__ = [
    "CodeFormat",
    "ConcurrentUpdateError",
    "GiftCardConsistencyService",
    "GiftCardNotFoundError",
    "GiftCardService",
    "GiftCardServiceError",
    "GiftCardUnavailableError",
    "InsufficientBalanceError",
    "LedgerConsistencySnapshot",
    "MetricOutcome",
    "ObservabilityService",
    "PersistenceError",
    "ValidationError",
    "ZeroBalanceError",
    "generate_code",
    "normalize_code",
    "post_entry",
]
