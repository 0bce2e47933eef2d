from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal

from backend.app import models
from backend.app.scripts import reconcile_gift_cards
from backend.app.services import GiftCardConsistencyService


def _patch_session_scope(monkeypatch, db_session) -> None:
    @contextmanager
    def _scope():
        yield db_session

    monkeypatch.setattr(reconcile_gift_cards, "session_scope", _scope)


def test_clean_ledger_has_no_issues(db_session, issue_card) -> None:
    issue_card("25")
    issue_card("40")

    snapshot = GiftCardConsistencyService.ledger_report(db_session)

    assert snapshot.cards_checked == 2
    assert not snapshot.has_issues


def test_card_without_history_is_reported(db_session) -> None:
    orphan = models.GiftCard(
        code="GIFT-ORPH-AN22",
        initial_balance=Decimal("10"),
        current_balance=Decimal("10"),
        status=models.GiftCardStatus.ACTIVE,
    )
    db_session.add(orphan)
    db_session.commit()

    snapshot = GiftCardConsistencyService.ledger_report(db_session)

    assert snapshot.cards_without_transactions == [orphan.id]
    assert [item.issue for item in snapshot.balance_mismatches] == [
        "stored balance differs from the ledger"
    ]


def test_tampered_entries_are_reported(db_session, issue_card) -> None:
    card = issue_card("20")
    db_session.add(
        models.GiftCardTransaction(
            gift_card_id=card.id,
            sequence=2,
            amount=Decimal("-25"),
            balance_after=Decimal("0"),
            type=models.GiftCardTransactionType.REDEMPTION,
        )
    )
    db_session.commit()

    snapshot = GiftCardConsistencyService.ledger_report(db_session)

    (out_of_range,) = snapshot.out_of_range_balances
    assert out_of_range.replayed_balance == Decimal("-5.00")
    issues = {item.issue for item in snapshot.balance_mismatches}
    assert "balance_after does not match the running sum at entry 2" in issues
    assert "stored balance differs from the ledger" in issues


def test_status_mismatch_is_reported(db_session, issue_card) -> None:
    card = issue_card("20")
    card.status = models.GiftCardStatus.DEPLETED
    db_session.commit()

    snapshot = GiftCardConsistencyService.ledger_report(db_session)

    assert [item.gift_card_id for item in snapshot.status_mismatches] == [card.id]


def test_cli_exit_codes(db_session, issue_card, monkeypatch) -> None:
    _patch_session_scope(monkeypatch, db_session)
    card = issue_card("15")

    assert reconcile_gift_cards.main([]) == 0

    card.status = models.GiftCardStatus.DEPLETED
    db_session.commit()

    assert reconcile_gift_cards.main(["--verbose"]) == 1
