"""Operational metric events recorded for gift card operations."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Index, Numeric, String, func
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON

from ..database import Base
from ..db_types import GUID, new_uuid

_JSON = JSON().with_variant(SQLiteJSON(), "sqlite")


class OperationalMetricEvent(Base):
    """Outcome and latency of one service call, e.g. ``gift_cards.redeem``."""

    __tablename__ = "operational_metric_events"
    __table_args__ = (
        Index("operational_metric_events_type_outcome_idx", "event_type", "outcome"),
    )

    id = Column("event_id", GUID(), primary_key=True, default=new_uuid)
    event_type = Column(String(120), nullable=False)
    outcome = Column(String(32), nullable=False)
    # ``GiftCardServiceError.code`` (or the exception class) for failed calls.
    error_code = Column(String(64), nullable=True)
    duration_ms = Column(Numeric(14, 3), nullable=True)
    tags = Column("labels", _JSON, nullable=False, default=dict)
    details = Column(_JSON, nullable=True)
    recorded_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
