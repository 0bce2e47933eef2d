"""Back-office operations on gift cards."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence, Tuple

from sqlalchemy import case, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .. import models, schemas
from .gift_card_codes import generate_code, max_generation_attempts, normalize_code
from .gift_card_errors import (
    GiftCardNotFoundError,
    GiftCardServiceError,
    GiftCardUnavailableError,
    InsufficientBalanceError,
    PersistenceError,
    ValidationError,
    ZeroBalanceError,
)
from .gift_card_ledger import PostedEntry, find_replay, post_entry, quantize_amount
from .observability import ObservabilityService

LOGGER = logging.getLogger(__name__)

DEFAULT_ISSUANCE_NOTE = "Manual issuance by admin"
DEFAULT_CREDIT_NOTE = "Manual credit by admin"
DEFAULT_DEBIT_NOTE = "Manual debit by admin"
DEFAULT_REDEMPTION_NOTE = "Gift card redemption"
DEFAULT_REFUND_NOTE = "Gift card refund"
LIKE_ESCAPE = "\\"

# Failures caused by the request rather than the system.
REJECTED_ERRORS = (
    ValidationError,
    InsufficientBalanceError,
    ZeroBalanceError,
    GiftCardNotFoundError,
)


@contextmanager
def _timed(db: Session, event_type: str, **tags: Any) -> Iterator[None]:
    with ObservabilityService.timed_event(
        db, event_type, tags=tags or None, rejected=REJECTED_ERRORS
    ):
        try:
            yield
        except GiftCardServiceError:
            # Release row locks taken before the failure was detected.
            db.rollback()
            raise


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_expired(card: models.GiftCard, *, now: Optional[datetime] = None) -> bool:
    expires_at = as_utc(card.expires_at)
    if expires_at is None:
        return False
    return expires_at <= (now or datetime.now(timezone.utc))


def _escape_like(term: str) -> str:
    """Make ``%`` and ``_`` in user input match literally."""

    for character in (LIKE_ESCAPE, "%", "_"):
        term = term.replace(character, LIKE_ESCAPE + character)
    return term


def _persistence_message(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    return str(original) if original is not None else str(exc)


class GiftCardService:
    """Issuance, balance adjustments, status changes and reporting."""

    @staticmethod
    def resolve_actor_id(db: Session, username: Optional[str]) -> Optional[str]:
        """Map an admin username to the customer row that records actions."""

        if not username:
            return None
        customer = (
            db.query(models.Customer)
            .filter(func.lower(models.Customer.email) == username.strip().lower())
            .first()
        )
        return customer.id if customer is not None else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @staticmethod
    def list_gift_cards(
        db: Session,
        *,
        status: Optional[schemas.GiftCardStatusFilter] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[Iterable[models.GiftCard], int]:
        query = db.query(models.GiftCard)

        if status is not None and status != schemas.GiftCardStatusFilter.ALL:
            query = query.filter(
                models.GiftCard.status == models.GiftCardStatus(status.value)
            )

        if search and search.strip():
            pattern = f"%{_escape_like(search.strip().lower())}%"
            columns = (
                models.GiftCard.code,
                models.GiftCard.recipient_email,
                models.GiftCard.purchaser_email,
                models.GiftCard.recipient_name,
            )
            query = query.filter(
                or_(
                    *(
                        func.lower(func.coalesce(column, "")).like(pattern, escape=LIKE_ESCAPE)
                        for column in columns
                    )
                )
            )

        total = query.count()
        items = (
            query.order_by(models.GiftCard.created_at.desc(), models.GiftCard.code.asc())
            .offset(max(skip, 0))
            .limit(max(limit, 1))
            .all()
        )
        return items, total

    @staticmethod
    def get_gift_card(db: Session, gift_card_id: str) -> models.GiftCard:
        card = db.query(models.GiftCard).filter(models.GiftCard.id == gift_card_id).first()
        if card is None:
            raise GiftCardNotFoundError("Gift card not found")
        return card

    @staticmethod
    def get_gift_card_detail(
        db: Session, gift_card_id: str
    ) -> Tuple[models.GiftCard, Sequence[models.GiftCardTransaction]]:
        """Return a card and its history, newest first."""

        card = GiftCardService.get_gift_card(db, gift_card_id)
        transactions = (
            db.query(models.GiftCardTransaction)
            .options(
                selectinload(models.GiftCardTransaction.order),
                selectinload(models.GiftCardTransaction.creator),
            )
            .filter(models.GiftCardTransaction.gift_card_id == card.id)
            .order_by(
                models.GiftCardTransaction.created_at.desc(),
                models.GiftCardTransaction.sequence.desc(),
            )
            .all()
        )
        return card, transactions

    @staticmethod
    def lookup_by_code(
        db: Session, code: str, *, now: Optional[datetime] = None
    ) -> schemas.GiftCardLookup:
        normalized = normalize_code(code or "")
        if not normalized:
            raise ValidationError("A gift card code is required", field="code")
        card = db.query(models.GiftCard).filter(models.GiftCard.code == normalized).first()
        if card is None:
            raise GiftCardNotFoundError("Gift card not found")

        expired = is_expired(card, now=now)
        display_status = card.status
        if expired and card.status == models.GiftCardStatus.ACTIVE:
            display_status = models.GiftCardStatus.DISABLED
        can_redeem = (
            card.status == models.GiftCardStatus.ACTIVE
            and Decimal(card.current_balance) > 0
            and not expired
        )
        return schemas.GiftCardLookup(
            code=card.code,
            current_balance=Decimal(card.current_balance),
            status=card.status,
            display_status=display_status,
            expires_at=card.expires_at,
            is_expired=expired,
            can_redeem=can_redeem,
        )

    @staticmethod
    def get_stats(db: Session) -> schemas.GiftCardStats:
        card = models.GiftCard
        active = card.status == models.GiftCardStatus.ACTIVE
        row = db.query(
            func.coalesce(func.sum(case((active, 1), else_=0)), 0),
            func.coalesce(func.sum(case((active, card.current_balance), else_=0)), 0),
            func.coalesce(
                func.sum(case((card.status == models.GiftCardStatus.DEPLETED, 1), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((card.status == models.GiftCardStatus.DISABLED, 1), else_=0)), 0
            ),
            func.coalesce(func.sum(card.initial_balance), 0),
            func.coalesce(func.sum(card.current_balance), 0),
        ).one()
        active_count, active_balance, depleted, disabled, issued, outstanding = row

        total_issued = Decimal(str(issued)).quantize(Decimal("0.01"))
        total_outstanding = Decimal(str(outstanding)).quantize(Decimal("0.01"))
        return schemas.GiftCardStats(
            total_active=int(active_count),
            total_active_balance=Decimal(str(active_balance)).quantize(Decimal("0.01")),
            total_depleted=int(depleted),
            total_disabled=int(disabled),
            total_issued=total_issued,
            total_redeemed=total_issued - total_outstanding,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    @staticmethod
    def issue_gift_card(
        db: Session,
        data: schemas.GiftCardCreate,
        *,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        code_factory: Callable[[], str] = generate_code,
    ) -> models.GiftCard:
        """Create a card and its purchase entry in a single transaction."""

        with _timed(db, "gift_cards.issue"):
            timestamp = now or datetime.now(timezone.utc)
            initial_balance = quantize_amount(data.initial_balance, field="initial_balance")
            expires_at = as_utc(data.expires_at)
            if expires_at is not None and expires_at <= timestamp:
                raise ValidationError(
                    "Expiration date must be in the future", field="expires_at"
                )

            attempts = max_generation_attempts()
            for attempt in range(1, attempts + 1):
                code = code_factory()
                if GiftCardService._code_exists(db, code):
                    LOGGER.warning(
                        "Generated gift card code collided with an existing card "
                        "(attempt %s of %s)",
                        attempt,
                        attempts,
                    )
                    continue

                card = models.GiftCard(
                    code=code,
                    initial_balance=initial_balance,
                    current_balance=Decimal("0"),
                    status=models.GiftCardStatus.ACTIVE,
                    purchaser_email=data.purchaser_email,
                    recipient_email=data.recipient_email,
                    recipient_name=data.recipient_name,
                    message=data.message,
                    purchased_at=timestamp,
                    expires_at=expires_at,
                    created_by=actor_id,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
                try:
                    db.add(card)
                    db.flush()
                except IntegrityError as exc:
                    db.rollback()
                    if GiftCardService._code_exists(db, code):
                        LOGGER.warning(
                            "Gift card code %s was taken concurrently (attempt %s of %s)",
                            code,
                            attempt,
                            attempts,
                        )
                        continue
                    LOGGER.exception("Unable to create gift card")
                    raise PersistenceError(_persistence_message(exc)) from exc
                except SQLAlchemyError as exc:
                    db.rollback()
                    LOGGER.exception("Unable to create gift card")
                    raise PersistenceError(_persistence_message(exc)) from exc

                GiftCardService._commit_entry(
                    db,
                    card,
                    initial_balance,
                    models.GiftCardTransactionType.PURCHASE,
                    notes=data.notes or DEFAULT_ISSUANCE_NOTE,
                    created_by=actor_id,
                    now=timestamp,
                )
                db.refresh(card)
                LOGGER.info("Issued gift card %s with balance %s", card.code, initial_balance)
                return card

            raise PersistenceError(
                f"Could not generate a unique gift card code after {attempts} attempts"
            )

    @staticmethod
    def adjust_balance(
        db: Session,
        gift_card_id: str,
        data: schemas.GiftCardAdjustmentCreate,
        *,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> schemas.BalanceChange:
        with _timed(db, "gift_cards.adjust", direction=data.direction.value):
            amount = quantize_amount(data.amount)
            card = GiftCardService._get_for_update(db, gift_card_id)
            replayed = GiftCardService._replay(db, card, idempotency_key)
            if replayed is not None:
                return replayed

            if data.direction == schemas.AdjustmentDirection.REMOVE:
                signed_amount = -amount
                default_note = DEFAULT_DEBIT_NOTE
            else:
                signed_amount = amount
                default_note = DEFAULT_CREDIT_NOTE

            entry = GiftCardService._commit_entry(
                db,
                card,
                signed_amount,
                models.GiftCardTransactionType.ADJUSTMENT,
                notes=data.notes or default_note,
                created_by=actor_id,
                idempotency_key=idempotency_key,
            )
            return GiftCardService._balance_change(card, entry)

    @staticmethod
    def set_status(
        db: Session,
        gift_card_id: str,
        status: models.GiftCardStatus | str,
    ) -> models.GiftCard:
        """Enable or disable a card. Depleted cards can only be revived by a credit."""

        with _timed(db, "gift_cards.set_status", status=getattr(status, "value", status)):
            try:
                target = models.GiftCardStatus(
                    status.strip().lower() if isinstance(status, str) else status
                )
            except ValueError as exc:
                raise ValidationError(f"Unknown status: {status}", field="status") from exc
            if target == models.GiftCardStatus.DEPLETED:
                raise ValidationError(
                    "Status can only be set to active or disabled", field="status"
                )

            card = GiftCardService._get_for_update(db, gift_card_id)
            if card.status == target:
                db.rollback()
                return card

            if card.status == models.GiftCardStatus.DEPLETED:
                if target == models.GiftCardStatus.ACTIVE:
                    raise ZeroBalanceError("Cannot activate a gift card with zero balance")
                raise ValidationError(
                    "Depleted gift cards cannot change status until they are credited",
                    field="status",
                )
            if target == models.GiftCardStatus.ACTIVE and Decimal(card.current_balance) == 0:
                raise ZeroBalanceError("Cannot activate a gift card with zero balance")

            card.status = target
            card.disabled_by_admin = target == models.GiftCardStatus.DISABLED
            card.updated_at = datetime.now(timezone.utc)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                LOGGER.exception("Unable to update status of gift card %s", gift_card_id)
                raise PersistenceError(_persistence_message(exc)) from exc
            db.refresh(card)
            LOGGER.info("Gift card %s is now %s", card.code, target.value)
            return card

    @staticmethod
    def redeem(
        db: Session,
        data: schemas.GiftCardRedemptionCreate,
        *,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> schemas.BalanceChange:
        with _timed(db, "gift_cards.redeem"):
            amount = quantize_amount(data.amount)
            code = normalize_code(data.code)
            card = (
                db.query(models.GiftCard)
                .filter(models.GiftCard.code == code)
                .with_for_update()
                .first()
            )
            if card is None:
                raise GiftCardNotFoundError("Gift card not found")

            replayed = GiftCardService._replay(db, card, idempotency_key)
            if replayed is not None:
                return replayed

            if card.status != models.GiftCardStatus.ACTIVE:
                raise GiftCardUnavailableError(f"Gift card is {card.status.value}")
            if is_expired(card, now=now):
                raise GiftCardUnavailableError("Gift card has expired")

            order = None
            if data.order_id:
                order = GiftCardService._get_order(db, data.order_id)
                if order.gift_card_id not in (None, card.id):
                    raise ValidationError(
                        "Order is already paid with another gift card", field="order_id"
                    )

            entry = GiftCardService._commit_entry(
                db,
                card,
                -amount,
                models.GiftCardTransactionType.REDEMPTION,
                notes=data.notes or DEFAULT_REDEMPTION_NOTE,
                order=order,
                order_delta=amount,
                created_by=actor_id,
                idempotency_key=idempotency_key,
            )
            return GiftCardService._balance_change(card, entry)

    @staticmethod
    def refund(
        db: Session,
        gift_card_id: str,
        data: schemas.GiftCardRefundCreate,
        *,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> schemas.BalanceChange:
        with _timed(db, "gift_cards.refund"):
            amount = quantize_amount(data.amount)
            card = GiftCardService._get_for_update(db, gift_card_id)
            replayed = GiftCardService._replay(db, card, idempotency_key)
            if replayed is not None:
                return replayed

            order = None
            if data.order_id:
                order = GiftCardService._get_order(db, data.order_id)
                if order.gift_card_id != card.id:
                    raise ValidationError(
                        "Order was not paid with this gift card", field="order_id"
                    )
                if amount > Decimal(order.gift_card_amount or 0):
                    raise ValidationError(
                        "Refund exceeds the amount charged to this gift card on the order",
                        field="amount",
                    )

            entry = GiftCardService._commit_entry(
                db,
                card,
                amount,
                models.GiftCardTransactionType.REFUND,
                notes=data.notes or DEFAULT_REFUND_NOTE,
                order=order,
                order_delta=-amount,
                created_by=actor_id,
                idempotency_key=idempotency_key,
            )
            return GiftCardService._balance_change(card, entry)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _code_exists(db: Session, code: str) -> bool:
        return (
            db.query(models.GiftCard.id).filter(models.GiftCard.code == code).first()
            is not None
        )

    @staticmethod
    def _get_for_update(db: Session, gift_card_id: str) -> models.GiftCard:
        card = (
            db.query(models.GiftCard)
            .filter(models.GiftCard.id == gift_card_id)
            .with_for_update()
            .first()
        )
        if card is None:
            raise GiftCardNotFoundError("Gift card not found")
        return card

    @staticmethod
    def _get_order(db: Session, order_id: str) -> models.Order:
        order = db.query(models.Order).filter(models.Order.id == order_id).first()
        if order is None:
            raise GiftCardNotFoundError("Order not found")
        return order

    @staticmethod
    def _commit_entry(
        db: Session,
        card: models.GiftCard,
        amount: Decimal,
        entry_type: models.GiftCardTransactionType,
        *,
        notes: Optional[str],
        order: Optional[models.Order] = None,
        order_delta: Decimal = Decimal("0"),
        created_by: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PostedEntry:
        """Post a ledger entry and commit, rolling back on any failure."""

        card_id = card.id
        try:
            entry = post_entry(
                db,
                card,
                amount,
                entry_type,
                notes=notes,
                order_id=order.id if order is not None else None,
                created_by=created_by,
                idempotency_key=idempotency_key,
                now=now,
            )
            if order is not None and not entry.replayed:
                order.gift_card_id = card.id
                order.gift_card_amount = Decimal(order.gift_card_amount or 0) + order_delta
                db.flush()
            db.commit()
        except GiftCardServiceError:
            db.rollback()
            raise
        except IntegrityError as exc:
            db.rollback()
            if idempotency_key:
                replay = find_replay(db, card_id, idempotency_key)
                if replay is not None:
                    LOGGER.info(
                        "Concurrent request with key %s already posted entry %s",
                        idempotency_key,
                        replay.id,
                    )
                    return PostedEntry(
                        transaction=replay,
                        balance_after=Decimal(replay.balance_after),
                        status=card.status,
                        replayed=True,
                    )
            LOGGER.exception("Unable to record gift card transaction for %s", card_id)
            raise PersistenceError(_persistence_message(exc)) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            LOGGER.exception("Unable to record gift card transaction for %s", card_id)
            raise PersistenceError(_persistence_message(exc)) from exc

        if entry.replayed:
            return entry
        LOGGER.info(
            "Recorded %s of %s on gift card %s; balance is now %s",
            entry_type.value,
            amount,
            card.code,
            entry.balance_after,
        )
        return entry

    @staticmethod
    def _replay(
        db: Session, card: models.GiftCard, idempotency_key: Optional[str]
    ) -> Optional[schemas.BalanceChange]:
        """Return the recorded outcome when ``idempotency_key`` was already used."""

        replay = find_replay(db, card.id, idempotency_key)
        if replay is None:
            return None
        result = schemas.BalanceChange(
            gift_card_id=card.id,
            transaction_id=replay.id,
            new_balance=Decimal(replay.balance_after),
            status=card.status,
            replayed=True,
        )
        db.rollback()
        LOGGER.info("Replayed gift card entry %s for key %s", replay.id, idempotency_key)
        return result

    @staticmethod
    def _balance_change(card: models.GiftCard, entry: PostedEntry) -> schemas.BalanceChange:
        return schemas.BalanceChange(
            gift_card_id=card.id,
            transaction_id=entry.transaction.id,
            new_balance=entry.balance_after,
            status=entry.status,
            replayed=entry.replayed,
        )


