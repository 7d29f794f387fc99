"""UsageCounter model — per user, resource type, and billing period."""

from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String

from entitlements.db.base import Base


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (CheckConstraint("current >= 0", name="current_non_negative"),)

    user_id = Column(String(255), primary_key=True)
    resource_type = Column(String(50), primary_key=True)
    period_key = Column(String(20), primary_key=True)  # "YYYY-MM"

    current = Column(Integer, nullable=False, default=0)
    # Limit in force at the last accepted increment (NULL = unbounded)
    limit = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
