"""Operational metrics for gift card operations.

Each issuance, adjustment, status change, redemption and refund records one
``OperationalMetricEvent`` with its latency and outcome. Events are written
through a separate session so a rolled-back operation still leaves a trace,
and a failure to write a metric never fails the operation itself.
"""

from __future__ import annotations

import enum
import logging
import time
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterator

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..database import read_bool_env

LOGGER = logging.getLogger(__name__)

METRICS_ENABLED_ENV = "ENABLE_OPERATION_METRICS"


class MetricOutcome(str, enum.Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    ERROR = "error"


def _error_code(exc: BaseException) -> str:
    return getattr(exc, "code", None) or type(exc).__name__


class ObservabilityService:
    @staticmethod
    def record_event(
        db: Session,
        event_type: str,
        outcome: MetricOutcome,
        *,
        duration_ms: float | None = None,
        error_code: str | None = None,
        tags: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not read_bool_env(METRICS_ENABLED_ENV, True):
            return
        event = models.OperationalMetricEvent(
            event_type=event_type,
            outcome=MetricOutcome(outcome).value,
            error_code=error_code,
            duration_ms=Decimal(f"{duration_ms:.3f}") if duration_ms is not None else None,
            tags=tags or {},
            details=details,
        )
        try:
            with Session(bind=db.get_bind()) as metrics_session:
                metrics_session.add(event)
                metrics_session.commit()
        except Exception:  # pragma: no cover - metrics must not break ledger operations
            LOGGER.exception("Failed to record %s metric", event_type)

    @staticmethod
    @contextmanager
    def timed_event(
        db: Session,
        event_type: str,
        *,
        tags: dict[str, Any] | None = None,
        rejected: tuple[type[BaseException], ...] = (),
    ) -> Iterator[None]:
        """Time the enclosed block and record how it ended.

        Exceptions that are instances of ``rejected`` count as rejected
        requests rather than errors. Exceptions always propagate.
        """

        started = time.perf_counter()
        try:
            yield
        except BaseException as exc:
            outcome = MetricOutcome.REJECTED if isinstance(exc, rejected) else MetricOutcome.ERROR
            ObservabilityService.record_event(
                db,
                event_type,
                outcome,
                duration_ms=(time.perf_counter() - started) * 1000,
                error_code=_error_code(exc),
                tags=tags,
                details={"message": str(exc)},
            )
            raise
        ObservabilityService.record_event(
            db,
            event_type,
            MetricOutcome.SUCCESS,
            duration_ms=(time.perf_counter() - started) * 1000,
            tags=tags,
        )

    @staticmethod
    def outcome_counts(db: Session, event_type: str) -> dict[str, int]:
        """Number of recorded events per outcome for ``event_type``."""

        rows = (
            db.query(
                models.OperationalMetricEvent.outcome,
                func.count(models.OperationalMetricEvent.id),
            )
            .filter(models.OperationalMetricEvent.event_type == event_type)
            .group_by(models.OperationalMetricEvent.outcome)
            .all()
        )
        return {outcome: int(count) for outcome, count in rows}

    @staticmethod
    def error_codes(db: Session, event_type: str) -> list[str]:
        rows = (
            db.query(models.OperationalMetricEvent.error_code)
            .filter(
                models.OperationalMetricEvent.event_type == event_type,
                models.OperationalMetricEvent.error_code.isnot(None),
            )
            .order_by(models.OperationalMetricEvent.recorded_at)
            .all()
        )
        return [code for (code,) in rows]
