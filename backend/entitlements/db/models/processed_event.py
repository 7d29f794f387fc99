"""ProcessedEvent model for webhook idempotency tracking."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, String, Text

from entitlements.db.base import Base


class EventOutcome(str, Enum):
    """Terminal result of applying a webhook event."""

    APPLIED = "applied"
    IGNORED = "ignored"
    FAILED = "failed"


class ProcessedEvent(Base):
    """One row per provider event id. Never deleted, including failed rows."""

    __tablename__ = "processed_events"

    provider_event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    customer_id = Column(String(255), nullable=True, index=True)

    # NULL while the event is in flight
    outcome = Column(String(20), nullable=True, index=True)
    error = Column(Text, nullable=True)

    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
    reconciled_at = Column(DateTime(timezone=True), nullable=True)
