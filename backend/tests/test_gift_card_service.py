from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text

from backend.app import models, schemas
from backend.app.services import (
    ConcurrentUpdateError,
    GiftCardConsistencyService,
    GiftCardNotFoundError,
    GiftCardService,
    GiftCardUnavailableError,
    InsufficientBalanceError,
    ObservabilityService,
    PersistenceError,
    ValidationError,
    ZeroBalanceError,
    post_entry,
)


def _adjust(db_session, card, direction: str, amount: str, **kwargs):
    return GiftCardService.adjust_balance(
        db_session,
        card.id,
        schemas.GiftCardAdjustmentCreate(direction=direction, amount=Decimal(amount)),
        **kwargs,
    )


def _transactions(db_session, card):
    return (
        db_session.query(models.GiftCardTransaction)
        .filter_by(gift_card_id=card.id)
        .order_by(models.GiftCardTransaction.sequence.asc())
        .all()
    )


def test_issue_creates_card_and_purchase_entry(db_session, admin_customer) -> None:
    card = GiftCardService.issue_gift_card(
        db_session,
        schemas.GiftCardCreate(
            initial_balance=Decimal("50.00"),
            recipient_email="Farmer@Example.com",
            recipient_name="Jo Farmer",
            message="Happy planting!",
        ),
        actor_id=admin_customer.id,
    )

    assert card.code.startswith("GIFT-")
    assert card.initial_balance == Decimal("50.00")
    assert card.current_balance == Decimal("50.00")
    assert card.status == models.GiftCardStatus.ACTIVE
    assert card.recipient_email == "farmer@example.com"
    assert card.created_by == admin_customer.id

    (purchase,) = _transactions(db_session, card)
    assert purchase.type == models.GiftCardTransactionType.PURCHASE
    assert purchase.amount == Decimal("50.00")
    assert purchase.balance_after == Decimal("50.00")
    assert purchase.notes == "Manual issuance by admin"
    assert purchase.created_by == admin_customer.id
    assert purchase.sequence == 1


@pytest.mark.parametrize("amount", ["0", "-5", "0.004"])
def test_issue_rejects_non_positive_amounts(db_session, amount) -> None:
    with pytest.raises(ValidationError):
        GiftCardService.issue_gift_card(
            db_session, schemas.GiftCardCreate(initial_balance=Decimal(amount))
        )

    assert db_session.query(models.GiftCard).count() == 0
    assert db_session.query(models.GiftCardTransaction).count() == 0


@pytest.mark.parametrize("amount", ["NaN", "Infinity"])
def test_issue_rejects_non_finite_amounts(db_session, amount) -> None:
    payload = schemas.GiftCardCreate.model_construct(initial_balance=Decimal(amount))

    with pytest.raises(ValidationError):
        GiftCardService.issue_gift_card(db_session, payload)

    assert db_session.query(models.GiftCard).count() == 0


def test_issue_normalises_amount_to_cents(issue_card) -> None:
    card = issue_card("10.5")

    assert card.initial_balance == Decimal("10.50")


@pytest.mark.parametrize("amount", ["10.005", "0.001"])
def test_sub_cent_debits_are_rejected(db_session, issue_card, amount) -> None:
    card = issue_card("10")

    with pytest.raises(ValidationError):
        _adjust(db_session, card, "remove", amount)

    db_session.expire_all()
    assert card.current_balance == Decimal("10.00")
    assert len(_transactions(db_session, card)) == 1


def test_issue_rejects_past_expiration(db_session) -> None:
    yesterday = datetime.now(timezone.utc) - timedelta(days=1)

    with pytest.raises(ValidationError) as excinfo:
        GiftCardService.issue_gift_card(
            db_session,
            schemas.GiftCardCreate(initial_balance=Decimal("25"), expires_at=yesterday),
        )

    assert excinfo.value.field == "expires_at"
    assert db_session.query(models.GiftCard).count() == 0


def test_issue_retries_when_generated_code_exists(db_session, issue_card) -> None:
    existing = issue_card("20")
    candidates = iter([existing.code, "GIFT-BBBB-CCCC"])

    card = GiftCardService.issue_gift_card(
        db_session,
        schemas.GiftCardCreate(initial_balance=Decimal("30")),
        code_factory=lambda: next(candidates),
    )

    assert card.code == "GIFT-BBBB-CCCC"
    assert db_session.query(models.GiftCard).count() == 2


def test_issue_retries_when_code_is_taken_during_flush(db_session, issue_card, monkeypatch) -> None:
    taken = issue_card("20").code
    candidates = iter([taken, "GIFT-DDDD-EEEE"])
    real_code_exists = GiftCardService._code_exists
    checked = []

    def code_exists(db, code):
        checked.append(code)
        # The first check runs before another writer commits the same code.
        if len(checked) == 1:
            return False
        return real_code_exists(db, code)

    monkeypatch.setattr(GiftCardService, "_code_exists", staticmethod(code_exists))

    card = GiftCardService.issue_gift_card(
        db_session,
        schemas.GiftCardCreate(initial_balance=Decimal("30")),
        code_factory=lambda: next(candidates),
    )

    assert card.code == "GIFT-DDDD-EEEE"
    assert checked == [taken, taken, "GIFT-DDDD-EEEE"]
    assert db_session.query(models.GiftCard).count() == 2
    assert db_session.query(models.GiftCardTransaction).count() == 2


def test_issue_gives_up_after_configured_attempts(db_session, issue_card, monkeypatch) -> None:
    existing = issue_card("20")
    monkeypatch.setenv("GIFT_CARD_CODE_MAX_ATTEMPTS", "3")
    calls = []

    def always_taken() -> str:
        calls.append(existing.code)
        return existing.code

    with pytest.raises(PersistenceError):
        GiftCardService.issue_gift_card(
            db_session,
            schemas.GiftCardCreate(initial_balance=Decimal("30")),
            code_factory=always_taken,
        )

    assert len(calls) == 3
    assert db_session.query(models.GiftCard).count() == 1


def test_debit_then_overdraft_is_rejected(db_session, issue_card) -> None:
    card = issue_card("50.00")

    change = _adjust(db_session, card, "remove", "20")
    assert change.new_balance == Decimal("30.00")
    assert change.status == models.GiftCardStatus.ACTIVE

    with pytest.raises(InsufficientBalanceError) as excinfo:
        _adjust(db_session, card, "remove", "30.01")

    assert excinfo.value.current_balance == Decimal("30.00")
    db_session.expire_all()
    assert card.current_balance == Decimal("30.00")
    assert len(_transactions(db_session, card)) == 2


def test_adjustment_uses_default_notes(db_session, issue_card) -> None:
    card = issue_card("40")

    _adjust(db_session, card, "remove", "10")
    _adjust(db_session, card, "add", "5")

    notes = [entry.notes for entry in _transactions(db_session, card)]
    assert notes == [
        "Manual issuance by admin",
        "Manual debit by admin",
        "Manual credit by admin",
    ]


def test_credit_cannot_exceed_initial_balance(db_session, issue_card) -> None:
    card = issue_card("40")
    _adjust(db_session, card, "remove", "10")

    with pytest.raises(ValidationError):
        _adjust(db_session, card, "add", "10.01")

    db_session.expire_all()
    assert card.current_balance == Decimal("30.00")


def test_adjusting_unknown_card_raises_not_found(db_session) -> None:
    with pytest.raises(GiftCardNotFoundError):
        GiftCardService.adjust_balance(
            db_session,
            "00000000-0000-0000-0000-000000000000",
            schemas.GiftCardAdjustmentCreate(direction="add", amount=Decimal("1")),
        )


def test_depletion_and_reactivation(db_session, issue_card) -> None:
    card = issue_card("30")

    change = _adjust(db_session, card, "remove", "30")
    assert change.new_balance == Decimal("0.00")
    assert change.status == models.GiftCardStatus.DEPLETED

    with pytest.raises(InsufficientBalanceError) as excinfo:
        _adjust(db_session, card, "remove", "0.01")
    assert excinfo.value.current_balance == Decimal("0.00")
    db_session.expire_all()
    assert card.current_balance == Decimal("0.00")
    assert card.status == models.GiftCardStatus.DEPLETED
    assert len(_transactions(db_session, card)) == 2

    with pytest.raises(ZeroBalanceError):
        GiftCardService.set_status(db_session, card.id, models.GiftCardStatus.ACTIVE)
    with pytest.raises(ValidationError):
        GiftCardService.set_status(db_session, card.id, models.GiftCardStatus.DISABLED)

    change = _adjust(db_session, card, "add", "10")
    assert change.status == models.GiftCardStatus.ACTIVE
    db_session.expire_all()
    assert card.status == models.GiftCardStatus.ACTIVE
    assert card.current_balance == Decimal("10.00")


def test_disabled_card_stays_disabled_after_credit(db_session, issue_card) -> None:
    card = issue_card("30")
    _adjust(db_session, card, "remove", "10")
    GiftCardService.set_status(db_session, card.id, "disabled")

    change = _adjust(db_session, card, "add", "5")

    assert change.status == models.GiftCardStatus.DISABLED


def test_disabled_card_drained_to_zero_stays_disabled_after_credit(db_session, issue_card) -> None:
    card = issue_card("30")
    GiftCardService.set_status(db_session, card.id, "disabled")

    drained = _adjust(db_session, card, "remove", "30")
    assert drained.status == models.GiftCardStatus.DEPLETED

    change = _adjust(db_session, card, "add", "5")

    assert change.status == models.GiftCardStatus.DISABLED
    db_session.expire_all()
    assert card.status == models.GiftCardStatus.DISABLED

    enabled = GiftCardService.set_status(db_session, card.id, "active")
    assert enabled.status == models.GiftCardStatus.ACTIVE
    assert enabled.disabled_by_admin is False

    _adjust(db_session, card, "remove", "5")
    assert _adjust(db_session, card, "add", "5").status == models.GiftCardStatus.ACTIVE


def test_status_toggle_rules(db_session, issue_card) -> None:
    card = issue_card("30")

    disabled = GiftCardService.set_status(db_session, card.id, "disabled")
    assert disabled.status == models.GiftCardStatus.DISABLED

    again = GiftCardService.set_status(db_session, card.id, "disabled")
    assert again.status == models.GiftCardStatus.DISABLED

    enabled = GiftCardService.set_status(db_session, card.id, "ACTIVE")
    assert enabled.status == models.GiftCardStatus.ACTIVE

    for invalid in ("depleted", "archived"):
        with pytest.raises(ValidationError):
            GiftCardService.set_status(db_session, card.id, invalid)

    # Status changes never touch the ledger.
    assert len(_transactions(db_session, card)) == 1


def test_redeem_links_order_and_debits_card(db_session, issue_card, order) -> None:
    card = issue_card("50")

    change = GiftCardService.redeem(
        db_session,
        schemas.GiftCardRedemptionCreate(
            code=card.code.lower(), amount=Decimal("12.50"), order_id=order.id
        ),
    )

    assert change.new_balance == Decimal("37.50")
    redemption = _transactions(db_session, card)[-1]
    assert redemption.type == models.GiftCardTransactionType.REDEMPTION
    assert redemption.amount == Decimal("-12.50")
    assert redemption.order_number == "ATL-10042"
    db_session.expire_all()
    assert order.gift_card_id == card.id
    assert order.gift_card_amount == Decimal("12.50")


def test_redeem_requires_redeemable_card(db_session, issue_card) -> None:
    card = issue_card("50", expires_at=datetime.now(timezone.utc) + timedelta(days=30))
    request = schemas.GiftCardRedemptionCreate(code=card.code, amount=Decimal("5"))

    with pytest.raises(GiftCardUnavailableError):
        GiftCardService.redeem(
            db_session, request, now=datetime.now(timezone.utc) + timedelta(days=31)
        )

    GiftCardService.set_status(db_session, card.id, "disabled")
    with pytest.raises(GiftCardUnavailableError):
        GiftCardService.redeem(db_session, request)

    GiftCardService.set_status(db_session, card.id, "active")
    with pytest.raises(InsufficientBalanceError):
        GiftCardService.redeem(
            db_session,
            schemas.GiftCardRedemptionCreate(code=card.code, amount=Decimal("50.01")),
        )

    with pytest.raises(GiftCardNotFoundError):
        GiftCardService.redeem(
            db_session,
            schemas.GiftCardRedemptionCreate(code="GIFT-NOPE-NOPE", amount=Decimal("1")),
        )


def test_refund_restores_balance_against_order(db_session, issue_card, order) -> None:
    card = issue_card("50")
    GiftCardService.redeem(
        db_session,
        schemas.GiftCardRedemptionCreate(code=card.code, amount=Decimal("20"), order_id=order.id),
    )

    with pytest.raises(ValidationError):
        GiftCardService.refund(
            db_session,
            card.id,
            schemas.GiftCardRefundCreate(amount=Decimal("20.01"), order_id=order.id),
        )

    change = GiftCardService.refund(
        db_session,
        card.id,
        schemas.GiftCardRefundCreate(amount=Decimal("5"), order_id=order.id),
    )

    assert change.new_balance == Decimal("35.00")
    refund = _transactions(db_session, card)[-1]
    assert refund.type == models.GiftCardTransactionType.REFUND
    assert refund.amount == Decimal("5.00")
    db_session.expire_all()
    assert order.gift_card_amount == Decimal("15.00")


def test_idempotency_key_replays_original_result(db_session, issue_card) -> None:
    card = issue_card("50")

    first = _adjust(db_session, card, "remove", "10", idempotency_key="retry-1")
    second = _adjust(db_session, card, "remove", "10", idempotency_key="retry-1")

    assert first.replayed is False
    assert second.replayed is True
    assert second.transaction_id == first.transaction_id
    assert second.new_balance == Decimal("40.00")
    db_session.expire_all()
    assert card.current_balance == Decimal("40.00")
    assert len(_transactions(db_session, card)) == 2


def test_stale_balance_is_rejected_as_concurrent_update(db_session, issue_card) -> None:
    card = issue_card("50")
    assert card.current_balance == Decimal("50.00")

    # Another writer moves the balance after this session loaded the card.
    db_session.execute(
        text("UPDATE gift_cards SET current_balance = 40 WHERE gift_card_id = :id"),
        {"id": card.id},
    )

    with pytest.raises(ConcurrentUpdateError):
        post_entry(
            db_session,
            card,
            Decimal("-5"),
            models.GiftCardTransactionType.ADJUSTMENT,
        )
    db_session.rollback()

    assert len(_transactions(db_session, card)) == 1


def test_random_operations_keep_ledger_consistent(db_session, issue_card) -> None:
    rng = random.Random(7)
    cards = [issue_card(str(rng.randint(10, 200))) for _ in range(5)]

    for _ in range(150):
        card = rng.choice(cards)
        amount = Decimal(rng.randint(1, 6000)) / 100
        direction = rng.choice(["add", "remove"])
        try:
            _adjust(db_session, card, direction, str(amount))
        except (InsufficientBalanceError, ValidationError):
            pass

    db_session.expire_all()
    for card in cards:
        entries = _transactions(db_session, card)
        running = sum((entry.amount for entry in entries), Decimal("0"))
        assert running == card.current_balance
        assert entries[-1].balance_after == card.current_balance
        assert Decimal("0") <= card.current_balance <= card.initial_balance
        assert (card.status == models.GiftCardStatus.DEPLETED) == (card.current_balance == 0)

    assert not GiftCardConsistencyService.ledger_report(db_session).has_issues


def test_detail_is_stable_and_newest_first(db_session, issue_card, admin_customer) -> None:
    card = issue_card("50")
    _adjust(db_session, card, "remove", "5", actor_id=admin_customer.id)
    _adjust(db_session, card, "remove", "5", actor_id=admin_customer.id)

    first_card, first_entries = GiftCardService.get_gift_card_detail(db_session, card.id)
    first = [schemas.GiftCardTransactionRead.model_validate(entry) for entry in first_entries]
    _, second_entries = GiftCardService.get_gift_card_detail(db_session, card.id)
    second = [schemas.GiftCardTransactionRead.model_validate(entry) for entry in second_entries]

    assert first == second
    assert [entry.sequence for entry in first] == [3, 2, 1]
    assert first[0].created_by_name == "Ada Okafor"
    assert first[-1].created_by_name is None
    assert first_card.current_balance == Decimal("40.00")


def test_list_filters_and_search(db_session, issue_card) -> None:
    issue_card("10", recipient_email="kale@example.com", recipient_name="Kale Lover")
    spent = issue_card("20", purchaser_email="buyer@example.com")
    _adjust(db_session, spent, "remove", "20")
    issue_card("30")

    items, total = GiftCardService.list_gift_cards(db_session)
    assert total == 3

    items, total = GiftCardService.list_gift_cards(
        db_session, status=schemas.GiftCardStatusFilter.DEPLETED
    )
    assert total == 1
    assert items[0].id == spent.id

    items, total = GiftCardService.list_gift_cards(db_session, search="KALE")
    assert total == 1

    items, total = GiftCardService.list_gift_cards(db_session, search=spent.code[-4:].lower())
    assert spent.id in {item.id for item in items}

    items, total = GiftCardService.list_gift_cards(db_session, skip=1, limit=1)
    assert total == 3
    assert len(items) == 1


def test_search_matches_wildcard_characters_literally(db_session, issue_card) -> None:
    underscored = issue_card("10", recipient_email="first_last@example.com")
    issue_card("10", recipient_email="firstxlast@example.com")
    organic = issue_card("10", recipient_name="100% Organic")

    items, total = GiftCardService.list_gift_cards(db_session, search="_")
    assert total == 1
    assert items[0].id == underscored.id

    items, total = GiftCardService.list_gift_cards(db_session, search="T_L")
    assert [item.id for item in items] == [underscored.id]

    items, total = GiftCardService.list_gift_cards(db_session, search="100%")
    assert [item.id for item in items] == [organic.id]


def test_stats_summarise_all_cards(db_session, issue_card) -> None:
    issue_card("50")
    spent = issue_card("20")
    _adjust(db_session, spent, "remove", "20")
    paused = issue_card("30")
    _adjust(db_session, paused, "remove", "5")
    GiftCardService.set_status(db_session, paused.id, "disabled")

    stats = GiftCardService.get_stats(db_session)

    assert stats.total_active == 1
    assert stats.total_active_balance == Decimal("50.00")
    assert stats.total_depleted == 1
    assert stats.total_disabled == 1
    assert stats.total_issued == Decimal("100.00")
    assert stats.total_redeemed == Decimal("25.00")


def test_lookup_reports_expired_cards_as_disabled(db_session, issue_card) -> None:
    card = issue_card("15", expires_at=datetime.now(timezone.utc) + timedelta(days=1))

    current = GiftCardService.lookup_by_code(db_session, f" {card.code.lower()} ")
    assert current.can_redeem is True
    assert current.display_status == models.GiftCardStatus.ACTIVE

    later = GiftCardService.lookup_by_code(
        db_session, card.code, now=datetime.now(timezone.utc) + timedelta(days=2)
    )
    assert later.is_expired is True
    assert later.can_redeem is False
    assert later.status == models.GiftCardStatus.ACTIVE
    assert later.display_status == models.GiftCardStatus.DISABLED


def test_operations_record_metrics(db_session, issue_card) -> None:
    card = issue_card("10")
    with pytest.raises(InsufficientBalanceError):
        _adjust(db_session, card, "remove", "11")

    assert ObservabilityService.outcome_counts(db_session, "gift_cards.issue") == {"success": 1}
    assert ObservabilityService.outcome_counts(db_session, "gift_cards.adjust") == {"rejected": 1}
    assert ObservabilityService.error_codes(db_session, "gift_cards.adjust") == [
        "insufficient_balance"
    ]


def test_metrics_can_be_disabled(db_session, issue_card, monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_OPERATION_METRICS", "0")

    issue_card("10")

    assert db_session.query(models.OperationalMetricEvent).count() == 0
