"""Sync gateway — the read/write surface the application talks to.

Reads combine the subscription record, its resolved entitlements, and live
usage. The subscription and entitlement parts go through the read-through
cache; usage is always read fresh. Views never carry provider identifiers,
only whether a billing account / subscription exists.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from pydantic import BaseModel

from entitlements.billing.provider import StripeProvider
from entitlements.core.exceptions import CustomerAlreadyLinked, SubscriptionNotFound
from entitlements.db.models.payment_event import PaymentEventLog
from entitlements.db.models.subscription_record import SubscriptionRecord
from entitlements.domain.entitlements import EntitlementSet, resolve
from entitlements.domain.lifecycle import lifecycle_state
from entitlements.domain.mutations import AdminUpdate, CancellationRequested, CustomerLinked
from entitlements.domain.tiers import ResourceType
from entitlements.services.audit import AuditLog
from entitlements.services.entitlement_cache import EntitlementCache
from entitlements.services.subscription_store import SubscriptionStore, as_utc
from entitlements.services.usage_ledger import UsageDecision, UsageLedger, UsageSnapshot

logger = structlog.get_logger(__name__)


class SubscriptionView(BaseModel):
    user_id: str
    tier: str
    status: str
    billing_interval: str | None
    accelerator_access: str
    has_billing_account: bool
    has_subscription: bool
    cancel_at_period_end: bool
    period_end: datetime | None
    total_paid: Decimal
    currency: str | None
    last_payment_date: datetime | None
    last_payment_failed_at: datetime | None
    installment_plan: bool
    installment_payments: int
    version: int


class EntitlementView(BaseModel):
    subscription: SubscriptionView
    entitlement: EntitlementSet
    usage: UsageSnapshot


class PaymentHistoryEntry(BaseModel):
    event_type: str
    amount: Decimal | None
    currency: str | None
    details: dict[str, Any]
    created_at: datetime


def _utc_or_none(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def history_entry(entry: PaymentEventLog) -> PaymentHistoryEntry:
    # Invoice and subscription ids are provider identifiers
    details = {key: value for key, value in (entry.details or {}).items() if not key.endswith("_id")}
    return PaymentHistoryEntry(
        event_type=entry.event_type,
        amount=entry.amount,
        currency=entry.currency,
        details=details,
        created_at=as_utc(entry.created_at),
    )


def subscription_view(record: SubscriptionRecord) -> SubscriptionView:
    return SubscriptionView(
        user_id=record.user_id,
        tier=record.tier,
        status=lifecycle_state(record).value,
        billing_interval=record.billing_interval,
        accelerator_access=record.accelerator_access,
        has_billing_account=record.provider_customer_id is not None,
        has_subscription=record.provider_subscription_id is not None,
        cancel_at_period_end=record.cancel_at_period_end,
        period_end=_utc_or_none(record.period_end),
        total_paid=Decimal(record.total_paid or 0),
        currency=record.currency,
        last_payment_date=_utc_or_none(record.last_payment_date),
        last_payment_failed_at=_utc_or_none(record.last_payment_failed_at),
        installment_plan=record.installment_plan,
        installment_payments=record.installment_payments,
        version=record.version,
    )


class SyncGateway:
    def __init__(
        self,
        store: SubscriptionStore,
        ledger: UsageLedger,
        cache: EntitlementCache,
        provider: StripeProvider | None = None,
        audit: AuditLog | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.cache = cache
        self.provider = provider or StripeProvider()
        self.audit = audit or AuditLog()

    async def get_entitlement(self, user_id: str) -> EntitlementView:
        """Subscription + entitlements (cached) and current-period usage (fresh)."""

        async def load() -> dict:
            record = await self.store.get_or_create(user_id)
            return {
                "subscription": subscription_view(record).model_dump(mode="json"),
                "entitlement": resolve(record).model_dump(mode="json"),
            }

        cached = await self.cache.get_or_load(user_id, load)
        usage = await self.ledger.get_usage(user_id)

        return EntitlementView(
            subscription=SubscriptionView.model_validate(cached["subscription"]),
            entitlement=EntitlementSet.model_validate(cached["entitlement"]),
            usage=usage,
        )

    async def record_checkout_completed(self, user_id: str, customer_id: str) -> SubscriptionView:
        """Link a provider customer to the user. Repeating the call changes nothing.

        Raises CustomerAlreadyLinked if the customer belongs to another user.
        """
        owner = await self.store.find_by_customer(customer_id)
        if owner is not None and owner.user_id != user_id:
            logger.warning("checkout_customer_conflict", user_id=user_id, owner_user_id=owner.user_id)
            raise CustomerAlreadyLinked(customer_id, user_id)

        await self.store.get_or_create(user_id)
        record = await self.store.apply_with_retry(user_id, CustomerLinked(customer_id=customer_id))
        return subscription_view(record)

    async def cancel_subscription(self, user_id: str) -> SubscriptionView:
        """Ask Stripe to cancel at period end, then mirror the flag locally.

        The tier stays until the provider's deletion event arrives.
        """
        record = await self.store.get(user_id)
        if record is None or not record.provider_subscription_id:
            raise SubscriptionNotFound(user_id)

        await self.provider.cancel_at_period_end(record.provider_subscription_id)
        record = await self.store.apply_with_retry(user_id, CancellationRequested())
        logger.info("subscription_cancel_requested", user_id=user_id)
        return subscription_view(record)

    async def admin_update(self, user_id: str, update: AdminUpdate) -> SubscriptionView:
        await self.store.get_or_create(user_id)
        record = await self.store.apply_with_retry(user_id, update)
        logger.info("subscription_admin_update", user_id=user_id, mutation=update.kind)
        return subscription_view(record)

    async def payment_history(self, user_id: str, limit: int = 50) -> list[PaymentHistoryEntry]:
        """Billing audit entries for the user, newest first. Read straight from storage."""
        if await self.store.get(user_id) is None:
            raise SubscriptionNotFound(user_id)
        return [history_entry(entry) for entry in await self.audit.history(user_id, limit=limit)]

    async def check_usage(
        self,
        user_id: str,
        resource_type: ResourceType | str,
        amount: int = 1,
        period_key: str | None = None,
    ) -> UsageDecision:
        return await self.ledger.check_and_increment(user_id, resource_type, amount, period_key)
