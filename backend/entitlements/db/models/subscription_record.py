"""SubscriptionRecord model — authoritative, versioned subscription state per user."""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Numeric, String

from entitlements.db.base import Base


class SubscriptionRecord(Base):
    __tablename__ = "subscription_records"
    __table_args__ = (
        CheckConstraint("total_paid >= 0", name="total_paid_non_negative"),
        CheckConstraint("version >= 1", name="version_positive"),
    )

    user_id = Column(String(255), primary_key=True)

    # Plan
    tier = Column(String(50), nullable=False, default="starter")
    billing_interval = Column(String(20), nullable=True)  # "monthly" | "annual"
    accelerator_access = Column(String(20), nullable=False, default="none")

    # Stripe (customer id doubles as the webhook → user lookup index)
    provider_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    provider_subscription_id = Column(String(255), nullable=True)

    # Period / cancellation
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    period_end = Column(DateTime(timezone=True), nullable=True)

    # Payments (total_paid is additive only)
    total_paid = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency = Column(String(3), nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_failed_at = Column(DateTime(timezone=True), nullable=True)

    # Accelerator installment plan
    installment_plan = Column(Boolean, nullable=False, default=False)
    installment_payments = Column(Integer, nullable=False, default=0)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    last_updated = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
