"""Replay of the gift card ledger to surface integrity issues."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from sqlalchemy.orm import Session

from .. import models


@dataclass(frozen=True)
class LedgerMismatch:
    """A card whose stored state disagrees with its transaction log."""

    gift_card_id: str
    code: str
    issue: str
    stored_balance: Decimal
    replayed_balance: Decimal
    latest_balance_after: Decimal | None = None


@dataclass
class LedgerConsistencySnapshot:
    """Aggregated inconsistencies found while replaying every card."""

    cards_checked: int = 0
    balance_mismatches: list[LedgerMismatch] = field(default_factory=list)
    out_of_range_balances: list[LedgerMismatch] = field(default_factory=list)
    cards_without_transactions: list[str] = field(default_factory=list)
    status_mismatches: list[LedgerMismatch] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return bool(
            self.balance_mismatches
            or self.out_of_range_balances
            or self.cards_without_transactions
            or self.status_mismatches
        )


class GiftCardConsistencyService:
    """Checks that balances equal the running sum of their ledger entries."""

    @staticmethod
    def _group_transactions(
        rows: Iterable[models.GiftCardTransaction],
    ) -> dict[str, list[models.GiftCardTransaction]]:
        grouped: dict[str, list[models.GiftCardTransaction]] = defaultdict(list)
        for row in rows:
            grouped[row.gift_card_id].append(row)
        return grouped

    @classmethod
    def ledger_report(cls, db: Session) -> LedgerConsistencySnapshot:
        cards = db.query(models.GiftCard).order_by(models.GiftCard.code.asc()).all()
        transactions = cls._group_transactions(
            db.query(models.GiftCardTransaction)
            .order_by(
                models.GiftCardTransaction.gift_card_id.asc(),
                models.GiftCardTransaction.sequence.asc(),
            )
            .all()
        )

        snapshot = LedgerConsistencySnapshot(cards_checked=len(cards))
        for card in cards:
            cls._check_card(card, transactions.get(card.id, []), snapshot)
        return snapshot

    @staticmethod
    def _check_card(
        card: models.GiftCard,
        entries: list[models.GiftCardTransaction],
        snapshot: LedgerConsistencySnapshot,
    ) -> None:
        stored = Decimal(card.current_balance)
        initial = Decimal(card.initial_balance)

        if not entries:
            snapshot.cards_without_transactions.append(card.id)

        running = Decimal("0")
        out_of_range = False
        step_mismatch = None
        for entry in entries:
            running += Decimal(entry.amount)
            if not out_of_range and (running < 0 or running > initial):
                out_of_range = True
                snapshot.out_of_range_balances.append(
                    LedgerMismatch(
                        gift_card_id=card.id,
                        code=card.code,
                        issue=f"running balance {running} outside [0, {initial}] at entry {entry.sequence}",
                        stored_balance=stored,
                        replayed_balance=running,
                    )
                )
            if step_mismatch is None and Decimal(entry.balance_after) != running:
                step_mismatch = entry.sequence

        latest = Decimal(entries[-1].balance_after) if entries else None
        if step_mismatch is not None:
            snapshot.balance_mismatches.append(
                LedgerMismatch(
                    gift_card_id=card.id,
                    code=card.code,
                    issue=f"balance_after does not match the running sum at entry {step_mismatch}",
                    stored_balance=stored,
                    replayed_balance=running,
                    latest_balance_after=latest,
                )
            )
        if running != stored or (latest is not None and latest != stored):
            snapshot.balance_mismatches.append(
                LedgerMismatch(
                    gift_card_id=card.id,
                    code=card.code,
                    issue="stored balance differs from the ledger",
                    stored_balance=stored,
                    replayed_balance=running,
                    latest_balance_after=latest,
                )
            )

        is_depleted = card.status == models.GiftCardStatus.DEPLETED
        if is_depleted != (stored == 0):
            snapshot.status_mismatches.append(
                LedgerMismatch(
                    gift_card_id=card.id,
                    code=card.code,
                    issue=f"status {card.status.value} does not match balance {stored}",
                    stored_balance=stored,
                    replayed_balance=running,
                    latest_balance_after=latest,
                )
            )
