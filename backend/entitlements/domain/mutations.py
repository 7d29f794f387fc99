"""Typed subscription mutations.

Each command maps to an explicit set of field writes on a SubscriptionRecord.
The store diffs the writes against the current row; a command whose writes
are all already in place commits nothing and leaves the version untouched.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Protocol

from entitlements.domain.tiers import AcceleratorAccess, Tier


class _Record(Protocol):
    tier: str
    accelerator_access: str
    provider_customer_id: str | None
    provider_subscription_id: str | None
    cancel_at_period_end: bool
    total_paid: Decimal
    installment_plan: bool
    installment_payments: int


@dataclass(frozen=True)
class SubscriptionMutation:
    kind: ClassVar[str] = "mutation"

    def changes(self, record: _Record) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class SubscriptionChanged(SubscriptionMutation):
    """customer.subscription.created / updated, or a reconciliation pull."""

    kind: ClassVar[str] = "subscription_changed"

    tier: Tier | None
    subscription_id: str | None
    period_end: datetime | None
    cancel_at_period_end: bool
    billing_interval: str | None = None
    installment_plan: bool = False

    def changes(self, record: _Record) -> dict[str, Any]:
        writes: dict[str, Any] = {
            "provider_subscription_id": self.subscription_id,
            "period_end": self.period_end,
            "cancel_at_period_end": self.cancel_at_period_end,
        }
        # Unknown price: keep the current tier rather than guessing
        if self.tier is not None:
            writes["tier"] = self.tier.value
        if self.billing_interval is not None:
            writes["billing_interval"] = self.billing_interval
        if self.subscription_id and self.subscription_id != record.provider_subscription_id:
            writes["installment_plan"] = self.installment_plan
            writes["installment_payments"] = 0
        elif self.installment_plan:
            # Same subscription: the flag only turns on, invoices may have set it already
            writes["installment_plan"] = True
        return writes


@dataclass(frozen=True)
class SubscriptionEnded(SubscriptionMutation):
    """customer.subscription.deleted: back to starter. Accelerator access is untouched."""

    kind: ClassVar[str] = "subscription_ended"

    def changes(self, record: _Record) -> dict[str, Any]:
        return {
            "tier": Tier.STARTER.value,
            "provider_subscription_id": None,
            "cancel_at_period_end": False,
            "period_end": None,
            "billing_interval": None,
            "installment_plan": False,
            "installment_payments": 0,
        }


@dataclass(frozen=True)
class PaymentRecorded(SubscriptionMutation):
    """invoice.payment_succeeded.

    Installment invoices count toward completion only when money was
    collected (amount > 0). Reaching exactly ``installment_threshold`` paid
    installments schedules cancellation at period end.
    """

    kind: ClassVar[str] = "payment_recorded"

    amount: Decimal
    currency: str | None
    paid_at: datetime
    installment: bool = False
    installment_threshold: int = 3

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("Payment amount cannot be negative")

    def counts_as_installment(self) -> bool:
        return self.installment and self.amount > 0

    def changes(self, record: _Record) -> dict[str, Any]:
        writes: dict[str, Any] = {
            "total_paid": Decimal(record.total_paid or 0) + self.amount,
            "last_payment_date": self.paid_at,
        }
        if self.currency:
            writes["currency"] = self.currency.upper()[:3]
        if self.counts_as_installment():
            paid = record.installment_payments + 1
            writes["installment_plan"] = True
            writes["installment_payments"] = paid
            if paid == self.installment_threshold:
                writes["cancel_at_period_end"] = True
        return writes

    def completes_installments(self, committed: _Record) -> bool:
        """True when this payment was the one that completed the plan."""
        return self.counts_as_installment() and committed.installment_payments == self.installment_threshold


@dataclass(frozen=True)
class PaymentFailed(SubscriptionMutation):
    """invoice.payment_failed: recorded for the UI only; dunning belongs to the provider."""

    kind: ClassVar[str] = "payment_failed"

    failed_at: datetime

    def changes(self, record: _Record) -> dict[str, Any]:
        return {"last_payment_failed_at": self.failed_at}


@dataclass(frozen=True)
class CheckoutCompleted(SubscriptionMutation):
    """checkout.session.completed."""

    kind: ClassVar[str] = "checkout_completed"

    customer_id: str | None
    subscription_id: str | None = None
    tier: Tier | None = None
    accelerator_enrolled: bool = False

    def changes(self, record: _Record) -> dict[str, Any]:
        writes: dict[str, Any] = {}
        if self.customer_id:
            writes["provider_customer_id"] = self.customer_id
        if self.subscription_id:
            writes["provider_subscription_id"] = self.subscription_id
        if self.tier is not None:
            writes["tier"] = self.tier.value
        if self.accelerator_enrolled and record.accelerator_access == AcceleratorAccess.NONE.value:
            writes["accelerator_access"] = AcceleratorAccess.ENROLLED.value
        return writes


@dataclass(frozen=True)
class CustomerLinked(SubscriptionMutation):
    """Associates the provider customer with the user. Re-linking the same id is a no-op."""

    kind: ClassVar[str] = "customer_linked"

    customer_id: str

    def changes(self, record: _Record) -> dict[str, Any]:
        return {"provider_customer_id": self.customer_id}


@dataclass(frozen=True)
class CancellationRequested(SubscriptionMutation):
    kind: ClassVar[str] = "cancellation_requested"

    def changes(self, record: _Record) -> dict[str, Any]:
        return {"cancel_at_period_end": True}


@dataclass(frozen=True)
class AdminUpdate(SubscriptionMutation):
    """Explicit administrative update. Only the listed fields are writable."""

    kind: ClassVar[str] = "admin_update"

    tier: Tier | None = None
    accelerator_access: AcceleratorAccess | None = None
    cancel_at_period_end: bool | None = None

    def changes(self, record: _Record) -> dict[str, Any]:
        writes: dict[str, Any] = {}
        if self.tier is not None:
            writes["tier"] = self.tier.value
        if self.accelerator_access is not None:
            writes["accelerator_access"] = self.accelerator_access.value
        if self.cancel_at_period_end is not None:
            writes["cancel_at_period_end"] = self.cancel_at_period_end
        return writes
