"""Router exposing gift card issuance, balance changes and reporting."""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..security import AdminIdentity, require_admin
from ..services import (
    ConcurrentUpdateError,
    GiftCardConsistencyService,
    GiftCardNotFoundError,
    GiftCardService,
    GiftCardServiceError,
    InsufficientBalanceError,
    PersistenceError,
    ValidationError,
    ZeroBalanceError,
)

LOGGER = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])

# Checked in order; subclasses come before their parents.
_ERROR_STATUS = (
    (GiftCardNotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (ZeroBalanceError, status.HTTP_409_CONFLICT),
    (ConcurrentUpdateError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

IdempotencyKey = Header(
    None,
    alias="Idempotency-Key",
    max_length=128,
    description="Replaying a key returns the original result without posting again",
)


def _status_for(exc: GiftCardServiceError) -> int:
    for error_cls, status_code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _failure(exc: GiftCardServiceError) -> JSONResponse:
    error = schemas.OperationError(
        code=exc.code,
        message=exc.message,
        current_balance=getattr(exc, "current_balance", None),
    )
    status_code = _status_for(exc)
    if status_code >= 500:
        LOGGER.error("Gift card operation failed (%s): %s", exc.code, exc.message)
    else:
        LOGGER.warning("Gift card operation rejected (%s): %s", exc.code, exc.message)
    payload = schemas.OperationResult[dict](success=False, error=error)
    return JSONResponse(status_code=status_code, content=payload.model_dump(mode="json"))


def _actor_id(db: Session, identity: AdminIdentity) -> Optional[str]:
    return GiftCardService.resolve_actor_id(db, identity.username)


@router.get("", response_model=schemas.GiftCardListResponse)
def list_gift_cards(
    db: Session = Depends(get_db),
    status_filter: schemas.GiftCardStatusFilter = Query(
        schemas.GiftCardStatusFilter.ALL,
        alias="status",
        description="Restrict the listing to one status",
    ),
    search: Optional[str] = Query(
        None, description="Match code, recipient or purchaser (case-insensitive)"
    ),
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of records to return"),
) -> schemas.GiftCardListResponse:
    items, total = GiftCardService.list_gift_cards(
        db, status=status_filter, search=search, skip=skip, limit=limit
    )
    return schemas.GiftCardListResponse(items=items, total=total, limit=limit, skip=skip)


@router.get("/stats", response_model=schemas.GiftCardStats)
def get_gift_card_stats(db: Session = Depends(get_db)) -> schemas.GiftCardStats:
    return GiftCardService.get_stats(db)


@router.get("/consistency", response_model=schemas.LedgerConsistencyReport)
def get_ledger_consistency(db: Session = Depends(get_db)) -> schemas.LedgerConsistencyReport:
    """Replay every card's ledger and list the cards that disagree with it."""

    snapshot = GiftCardConsistencyService.ledger_report(db)
    return schemas.LedgerConsistencyReport.model_validate(dataclasses.asdict(snapshot))


@router.get("/lookup/{code}", response_model=schemas.GiftCardLookup)
def lookup_gift_card(code: str, db: Session = Depends(get_db)) -> schemas.GiftCardLookup:
    try:
        return GiftCardService.lookup_by_code(db, code)
    except GiftCardNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post(
    "",
    response_model=schemas.OperationResult[schemas.GiftCardRead],
    status_code=status.HTTP_201_CREATED,
)
def issue_gift_card(
    card_in: schemas.GiftCardCreate,
    db: Session = Depends(get_db),
    identity: AdminIdentity = Depends(require_admin),
):
    try:
        card = GiftCardService.issue_gift_card(db, card_in, actor_id=_actor_id(db, identity))
    except GiftCardServiceError as exc:
        return _failure(exc)
    return schemas.OperationResult[schemas.GiftCardRead](
        success=True, value=schemas.GiftCardRead.model_validate(card)
    )


@router.post(
    "/redemptions",
    response_model=schemas.OperationResult[schemas.BalanceChange],
)
def redeem_gift_card(
    redemption_in: schemas.GiftCardRedemptionCreate,
    db: Session = Depends(get_db),
    identity: AdminIdentity = Depends(require_admin),
    idempotency_key: Optional[str] = IdempotencyKey,
):
    try:
        change = GiftCardService.redeem(
            db,
            redemption_in,
            actor_id=_actor_id(db, identity),
            idempotency_key=idempotency_key,
        )
    except GiftCardServiceError as exc:
        return _failure(exc)
    return schemas.OperationResult[schemas.BalanceChange](success=True, value=change)


@router.get("/{gift_card_id}", response_model=schemas.GiftCardDetail)
def get_gift_card(gift_card_id: str, db: Session = Depends(get_db)) -> schemas.GiftCardDetail:
    try:
        card, transactions = GiftCardService.get_gift_card_detail(db, gift_card_id)
    except GiftCardNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return schemas.GiftCardDetail(
        card=schemas.GiftCardRead.model_validate(card),
        transactions=[
            schemas.GiftCardTransactionRead.model_validate(transaction)
            for transaction in transactions
        ],
    )


@router.post(
    "/{gift_card_id}/adjustments",
    response_model=schemas.OperationResult[schemas.BalanceChange],
)
def adjust_gift_card_balance(
    gift_card_id: str,
    adjustment_in: schemas.GiftCardAdjustmentCreate,
    db: Session = Depends(get_db),
    identity: AdminIdentity = Depends(require_admin),
    idempotency_key: Optional[str] = IdempotencyKey,
):
    try:
        change = GiftCardService.adjust_balance(
            db,
            gift_card_id,
            adjustment_in,
            actor_id=_actor_id(db, identity),
            idempotency_key=idempotency_key,
        )
    except GiftCardServiceError as exc:
        return _failure(exc)
    return schemas.OperationResult[schemas.BalanceChange](success=True, value=change)


@router.patch(
    "/{gift_card_id}/status",
    response_model=schemas.OperationResult[schemas.GiftCardRead],
)
def update_gift_card_status(
    gift_card_id: str,
    status_in: schemas.GiftCardStatusUpdate,
    db: Session = Depends(get_db),
):
    try:
        card = GiftCardService.set_status(db, gift_card_id, status_in.status)
    except GiftCardServiceError as exc:
        return _failure(exc)
    return schemas.OperationResult[schemas.GiftCardRead](
        success=True, value=schemas.GiftCardRead.model_validate(card)
    )


@router.post(
    "/{gift_card_id}/refunds",
    response_model=schemas.OperationResult[schemas.BalanceChange],
)
def refund_to_gift_card(
    gift_card_id: str,
    refund_in: schemas.GiftCardRefundCreate,
    db: Session = Depends(get_db),
    identity: AdminIdentity = Depends(require_admin),
    idempotency_key: Optional[str] = IdempotencyKey,
):
    try:
        change = GiftCardService.refund(
            db,
            gift_card_id,
            refund_in,
            actor_id=_actor_id(db, identity),
            idempotency_key=idempotency_key,
        )
    except GiftCardServiceError as exc:
        return _failure(exc)
    return schemas.OperationResult[schemas.BalanceChange](success=True, value=change)
