"""Re-export all models so Base.metadata sees them."""

from entitlements.db.models.payment_event import PaymentEventLog
from entitlements.db.models.processed_event import EventOutcome, ProcessedEvent
from entitlements.db.models.subscription_record import SubscriptionRecord
from entitlements.db.models.usage_counter import UsageCounter

__all__ = [
    "EventOutcome",
    "PaymentEventLog",
    "ProcessedEvent",
    "SubscriptionRecord",
    "UsageCounter",
]
