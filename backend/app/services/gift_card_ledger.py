"""Append-only ledger that owns gift card balances.

Every balance change goes through :func:`post_entry`. It writes the new
balance with a compare-and-swap update and appends the matching
transaction row in the caller's database transaction, so a committed card
always agrees with the ``balance_after`` of its latest transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from .gift_card_errors import (
    ConcurrentUpdateError,
    InsufficientBalanceError,
    ValidationError,
)

LOGGER = logging.getLogger(__name__)

CENTS = Decimal("0.01")
MAX_BALANCE = Decimal("99999999.99")


@dataclass
class PostedEntry:
    transaction: models.GiftCardTransaction
    balance_after: Decimal
    status: models.GiftCardStatus
    replayed: bool = False


def quantize_amount(value: Any, *, field: str = "amount") -> Decimal:
    """Coerce ``value`` to a positive amount in whole cents.

    Amounts with sub-cent precision are rejected rather than rounded.
    """

    if isinstance(value, bool):
        raise ValidationError("Amount must be a number", field=field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Amount must be a number", field=field) from exc
    if not amount.is_finite():
        raise ValidationError("Amount must be a finite number", field=field)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero", field=field)
    if amount > MAX_BALANCE:
        raise ValidationError(f"Amount cannot exceed {MAX_BALANCE}", field=field)
    if amount != amount.quantize(CENTS, rounding=ROUND_HALF_UP):
        raise ValidationError("Amount cannot have more than two decimal places", field=field)
    return amount.quantize(CENTS)


def resolve_status(
    current: models.GiftCardStatus,
    balance_after: Decimal,
    *,
    disabled_by_admin: bool = False,
) -> models.GiftCardStatus:
    """Status implied by a new balance.

    A card at zero is depleted. A depleted card that receives funds goes
    back to ``disabled`` if an admin disabled it before it was drained, and
    to ``active`` otherwise. Disabled cards stay disabled until an admin
    enables them.
    """

    if balance_after == 0:
        return models.GiftCardStatus.DEPLETED
    if current == models.GiftCardStatus.DEPLETED:
        if disabled_by_admin:
            return models.GiftCardStatus.DISABLED
        return models.GiftCardStatus.ACTIVE
    return current


def find_replay(
    db: Session, gift_card_id: str, idempotency_key: Optional[str]
) -> Optional[models.GiftCardTransaction]:
    if not idempotency_key:
        return None
    return (
        db.query(models.GiftCardTransaction)
        .filter(
            models.GiftCardTransaction.gift_card_id == gift_card_id,
            models.GiftCardTransaction.idempotency_key == idempotency_key,
        )
        .first()
    )


def _next_sequence(db: Session, gift_card_id: str) -> int:
    latest = (
        db.query(func.max(models.GiftCardTransaction.sequence))
        .filter(models.GiftCardTransaction.gift_card_id == gift_card_id)
        .scalar()
    )
    return int(latest or 0) + 1


def post_entry(
    db: Session,
    card: models.GiftCard,
    amount: Decimal,
    entry_type: models.GiftCardTransactionType,
    *,
    notes: Optional[str] = None,
    order_id: Optional[str] = None,
    created_by: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PostedEntry:
    """Apply a signed ``amount`` to ``card`` and append the ledger row.

    The caller owns the transaction boundary: nothing is committed here.
    A repeated ``idempotency_key`` returns the original entry untouched.
    """

    replay = find_replay(db, card.id, idempotency_key)
    if replay is not None:
        LOGGER.info(
            "Replaying gift card entry %s for card %s (key %s)",
            replay.id,
            card.id,
            idempotency_key,
        )
        return PostedEntry(
            transaction=replay,
            balance_after=Decimal(replay.balance_after),
            status=card.status,
            replayed=True,
        )

    if amount == 0:
        raise ValidationError("Ledger entries cannot have a zero amount", field="amount")

    balance_before = Decimal(card.current_balance)
    balance_after = (balance_before + amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    if balance_after < 0:
        raise InsufficientBalanceError(balance_before, -amount)
    if balance_after > Decimal(card.initial_balance):
        raise ValidationError(
            f"Balance cannot exceed the initial value of {Decimal(card.initial_balance):.2f}",
            field="amount",
        )

    next_status = resolve_status(
        card.status, balance_after, disabled_by_admin=bool(card.disabled_by_admin)
    )
    timestamp = now or datetime.now(timezone.utc)

    updated = (
        db.query(models.GiftCard)
        .filter(
            models.GiftCard.id == card.id,
            models.GiftCard.current_balance == balance_before,
        )
        .update(
            {
                models.GiftCard.current_balance: balance_after,
                models.GiftCard.status: next_status,
                models.GiftCard.updated_at: timestamp,
            },
            synchronize_session="evaluate",
        )
    )
    if updated != 1:
        raise ConcurrentUpdateError(
            "The gift card balance changed while this operation was in progress; retry"
        )

    transaction = models.GiftCardTransaction(
        gift_card_id=card.id,
        order_id=order_id,
        sequence=_next_sequence(db, card.id),
        amount=amount,
        balance_after=balance_after,
        type=entry_type,
        notes=notes,
        idempotency_key=idempotency_key,
        created_by=created_by,
        created_at=timestamp,
    )
    db.add(transaction)
    db.flush()

    LOGGER.debug(
        "Posted %s of %s to card %s; balance %s -> %s",
        entry_type.value,
        amount,
        card.id,
        balance_before,
        balance_after,
    )
    return PostedEntry(
        transaction=transaction,
        balance_after=balance_after,
        status=next_status,
    )
