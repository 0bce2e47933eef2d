"""CLI utility that replays the gift card ledger and reports inconsistencies.

Exits with status 1 when any card disagrees with its transaction log so the
command can gate cron jobs or deploy pipelines.
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from ..database import session_scope
from ..services.gift_card_consistency import GiftCardConsistencyService

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Replay every gift card's transaction log from zero and compare it "
            "with the stored balance and status."
        )
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every anomaly instead of only the totals.",
    )
    return parser.parse_args(argv)


def _log_findings(label: str, items: list) -> None:
    if not items:
        LOGGER.info("%s: none", label)
        return
    LOGGER.warning("%s: %s", label, len(items))
    for item in items:
        LOGGER.debug("%s: %s", label, item)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    with session_scope() as db:
        snapshot = GiftCardConsistencyService.ledger_report(db)

    LOGGER.info("Checked %s gift cards", snapshot.cards_checked)
    _log_findings("Balance mismatches", snapshot.balance_mismatches)
    _log_findings("Running balance out of range", snapshot.out_of_range_balances)
    _log_findings("Cards without transactions", snapshot.cards_without_transactions)
    _log_findings("Status does not match balance", snapshot.status_mismatches)

    if snapshot.has_issues:
        LOGGER.error("Gift card ledger is inconsistent")
        return 1
    LOGGER.info("Gift card ledger is consistent")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
