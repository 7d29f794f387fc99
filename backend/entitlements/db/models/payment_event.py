"""PaymentEventLog model — append-only billing audit trail."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String

from entitlements.db.base import Base


class PaymentEventLog(Base):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    provider_event_id = Column(String(255), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    details = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
