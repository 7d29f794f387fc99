"""Webhook event processing: verify → admit → apply → record outcome.

Each handled Stripe event type maps to exactly one typed subscription
mutation. The event id is claimed before any effect runs, so a redelivery of
an event that was already applied (or that failed part-way) never applies
its effects twice. Failed events keep their ProcessedEvent row and are picked
up by the reconciliation job instead of being retried here.
"""

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog

from entitlements.billing.deduplicator import Admission, EventDeduplicator
from entitlements.billing.provider import LIVE_STATUS_PRIORITY, StripeProvider
from entitlements.billing.verifier import ProviderEvent, verify
from entitlements.core.config import get_settings
from entitlements.core.exceptions import EventProcessingError, ProviderNotConfigured
from entitlements.db.models.processed_event import EventOutcome
from entitlements.db.models.subscription_record import SubscriptionRecord
from entitlements.domain.mutations import (
    CheckoutCompleted,
    PaymentFailed,
    PaymentRecorded,
    SubscriptionChanged,
    SubscriptionEnded,
)
from entitlements.domain.tiers import interval_for_price, parse_tier, tier_for_price
from entitlements.services.audit import AuditLog
from entitlements.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)

ACCELERATOR_PRODUCT_TYPES = frozenset({"accelerator", "accelerator_full", "accelerator_installment"})

_STRIPE_INTERVALS = {"month": "monthly", "year": "annual"}


@dataclass(frozen=True)
class ProcessResult:
    event_id: str
    event_type: str
    duplicate: bool = False
    outcome: EventOutcome | None = None


# ── Payload helpers ─────────────────────────────────────────────────


def _id_of(value: Any) -> str | None:
    """Stripe references arrive as an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _from_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def subscription_mutation(subscription: dict[str, Any]) -> SubscriptionChanged:
    """Build the mutation a Stripe subscription object implies.

    Tier comes from a configured price ID, else an exact tier name in the
    price's lookup key or the subscription's ``tier`` metadata. An
    unrecognized price leaves the stored tier alone.
    """
    metadata = subscription.get("metadata") or {}
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    price_id = price.get("id")

    tier = tier_for_price(price_id, price.get("lookup_key"))
    if tier is None:
        tier = parse_tier(metadata.get("tier"))

    interval = interval_for_price(price_id)
    if interval is None:
        interval = _STRIPE_INTERVALS.get((price.get("recurring") or {}).get("interval"))

    # Newer API versions moved the period onto the subscription item
    period_end = subscription.get("current_period_end") or first_item.get("current_period_end")

    return SubscriptionChanged(
        tier=tier,
        subscription_id=subscription.get("id"),
        period_end=_from_timestamp(period_end),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        billing_interval=interval,
        installment_plan=_truthy(metadata.get("installment_plan", False)),
    )


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription_id = _id_of(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    return _id_of((parent.get("subscription_details") or {}).get("subscription"))


def _invoice_is_installment(invoice: dict[str, Any]) -> bool:
    details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
    sub_metadata = details.get("metadata") or {}
    invoice_metadata = invoice.get("metadata") or {}
    return _truthy(sub_metadata.get("installment_plan", False)) or _truthy(
        invoice_metadata.get("installment_plan", False)
    )


def _invoice_amount(invoice: dict[str, Any]) -> Decimal:
    """Amount actually collected, in major currency units."""
    cents = invoice.get("amount_paid") or 0
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))


def payment_mutation(event: ProviderEvent, record: SubscriptionRecord | None) -> PaymentRecorded:
    """PaymentRecorded for an invoice.payment_succeeded event.

    The paid timestamp prefers the invoice's own ``paid_at`` so the webhook and
    a later replay of the same event record the same ``last_payment_date``.
    """
    invoice = event.data_object
    paid_at = (
        _from_timestamp((invoice.get("status_transitions") or {}).get("paid_at"))
        or _from_timestamp(event.created)
        or datetime.now(UTC)
    )
    return PaymentRecorded(
        amount=_invoice_amount(invoice),
        currency=invoice.get("currency"),
        paid_at=paid_at,
        installment=_invoice_is_installment(invoice) or bool(record and record.installment_plan),
        installment_threshold=get_settings().installment_payment_count,
    )


# ── Processor ───────────────────────────────────────────────────────


class WebhookProcessor:
    def __init__(
        self,
        store: SubscriptionStore,
        deduplicator: EventDeduplicator,
        provider: StripeProvider | None = None,
        audit: AuditLog | None = None,
    ):
        self.store = store
        self.deduplicator = deduplicator
        self.provider = provider or StripeProvider()
        self.audit = audit or AuditLog()
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    @property
    def handled_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def handle(self, raw_body: bytes | str, signature_header: str | None) -> ProcessResult:
        """Verify a raw delivery and process it.

        Raises:
            VerificationError: signature/secret/payload problems (nothing recorded)
            EventProcessingError: the event was admitted but its effects failed
        """
        settings = get_settings()
        event = verify(
            raw_body,
            signature_header,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
        return await self.process(event)

    async def process(self, event: ProviderEvent) -> ProcessResult:
        """Admit an already-verified event and apply its effects at most once."""
        if await self.deduplicator.admit(event) is Admission.ALREADY_PROCESSED:
            return ProcessResult(event_id=event.id, event_type=event.type, duplicate=True)

        logger.info("stripe_webhook_received", event_type=event.type, event_id=event.id)

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("stripe_event_type_ignored", event_type=event.type, event_id=event.id)
            await self.deduplicator.complete(event.id, EventOutcome.IGNORED)
            return ProcessResult(event_id=event.id, event_type=event.type, outcome=EventOutcome.IGNORED)

        timeout = get_settings().webhook_processing_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                outcome = await handler(event)
        except Exception as exc:
            reason = "processing timed out" if isinstance(exc, TimeoutError) else f"{type(exc).__name__}: {exc}"
            logger.error(
                "stripe_event_processing_failed",
                event_type=event.type,
                event_id=event.id,
                error=reason,
                exc_info=True,
            )
            await self.deduplicator.complete(event.id, EventOutcome.FAILED, error=reason)
            raise EventProcessingError(event.id, event.type, reason) from exc

        await self.deduplicator.complete(event.id, outcome)
        return ProcessResult(event_id=event.id, event_type=event.type, outcome=outcome)

    # ── Event handlers ──────────────────────────────────────────────

    async def _user_for_customer(self, event: ProviderEvent) -> str | None:
        customer_id = event.customer_id
        if not customer_id:
            logger.warning("stripe_event_missing_customer", event_type=event.type, event_id=event.id)
            return None

        record = await self.store.find_by_customer(customer_id)
        if record is None:
            logger.warning("stripe_event_unknown_customer", event_type=event.type, customer_id=customer_id)
            return None
        return record.user_id

    async def _handle_checkout_completed(self, event: ProviderEvent) -> EventOutcome:
        """Link the Stripe customer and apply the purchased tier / accelerator enrollment."""
        session_data = event.data_object
        metadata = session_data.get("metadata") or {}
        user_id = metadata.get("userId") or metadata.get("user_id") or session_data.get("client_reference_id")
        if not user_id:
            logger.warning("checkout_completed_missing_user", event_id=event.id)
            return EventOutcome.IGNORED

        product_type = metadata.get("productType") or metadata.get("product_type")
        mutation = CheckoutCompleted(
            customer_id=event.customer_id,
            subscription_id=_id_of(session_data.get("subscription")),
            tier=parse_tier(metadata.get("tier")),
            accelerator_enrolled=product_type in ACCELERATOR_PRODUCT_TYPES,
        )

        await self.store.get_or_create(user_id)
        record = await self.store.apply_with_retry(user_id, mutation)
        logger.info("checkout_completed_applied", user_id=user_id, tier=record.tier)

        await self.audit.record(
            user_id,
            "checkout_completed",
            provider_event_id=event.id,
            amount=_invoice_amount({"amount_paid": session_data.get("amount_total")}),
            currency=session_data.get("currency"),
            product_type=product_type,
        )

        if mutation.subscription_id:
            await self._pull_checkout_subscription(user_id, mutation.subscription_id)
        return EventOutcome.APPLIED

    async def _pull_checkout_subscription(self, user_id: str, subscription_id: str) -> None:
        """Apply the subscription's current state once the customer is linked.

        customer.subscription.created can arrive before checkout.session.completed,
        while no record resolves its customer, and is then ignored.
        """
        try:
            subscription = await self.provider.retrieve_subscription(subscription_id)
        except ProviderNotConfigured:
            logger.warning("checkout_subscription_pull_skipped", user_id=user_id, subscription_id=subscription_id)
            return

        if subscription.get("status") not in LIVE_STATUS_PRIORITY:
            logger.info(
                "checkout_subscription_not_live",
                user_id=user_id,
                subscription_id=subscription_id,
                status=subscription.get("status"),
            )
            return

        record = await self.store.apply_with_retry(user_id, subscription_mutation(subscription))
        logger.info("checkout_subscription_synced", user_id=user_id, tier=record.tier, version=record.version)

    async def _handle_subscription_changed(self, event: ProviderEvent) -> EventOutcome:
        user_id = await self._user_for_customer(event)
        if user_id is None:
            return EventOutcome.IGNORED

        mutation = subscription_mutation(event.data_object)
        if mutation.tier is None:
            logger.warning(
                "subscription_unknown_price",
                user_id=user_id,
                subscription_id=mutation.subscription_id,
            )

        record = await self.store.apply_with_retry(user_id, mutation)
        status = event.data_object.get("status")
        logger.info("subscription_status_updated", user_id=user_id, tier=record.tier, status=status)

        await self.audit.record(
            user_id,
            event.type.removeprefix("customer."),
            provider_event_id=event.id,
            tier=record.tier,
            status=status,
        )
        return EventOutcome.APPLIED

    async def _handle_subscription_deleted(self, event: ProviderEvent) -> EventOutcome:
        """Downgrade to starter. Accelerator access is a separate purchase and stays."""
        user_id = await self._user_for_customer(event)
        if user_id is None:
            return EventOutcome.IGNORED

        record = await self.store.get(user_id)
        deleted_id = event.data_object.get("id")
        if record is not None and record.provider_subscription_id and deleted_id != record.provider_subscription_id:
            # A superseded subscription ending must not downgrade the current one
            logger.info(
                "subscription_deleted_not_current",
                user_id=user_id,
                subscription_id=deleted_id,
                current_subscription_id=record.provider_subscription_id,
            )
            return EventOutcome.IGNORED

        await self.store.apply_with_retry(user_id, SubscriptionEnded())
        logger.info("plan_downgraded_to_starter", user_id=user_id)

        await self.audit.record(user_id, "subscription.deleted", provider_event_id=event.id)
        return EventOutcome.APPLIED

    async def _handle_payment_succeeded(self, event: ProviderEvent) -> EventOutcome:
        user_id = await self._user_for_customer(event)
        if user_id is None:
            return EventOutcome.IGNORED

        invoice = event.data_object
        mutation = payment_mutation(event, await self.store.get(user_id))

        committed = await self.store.apply_with_retry(user_id, mutation)
        logger.info(
            "payment_recorded",
            user_id=user_id,
            amount=str(mutation.amount),
            total_paid=str(committed.total_paid),
            installment_payments=committed.installment_payments,
        )

        await self.audit.record(
            user_id,
            "payment_succeeded",
            provider_event_id=event.id,
            amount=mutation.amount,
            currency=mutation.currency,
            invoice_id=invoice.get("id"),
            installment=mutation.counts_as_installment(),
        )

        if mutation.completes_installments(committed):
            subscription_id = _invoice_subscription_id(invoice) or committed.provider_subscription_id
            logger.info("installment_plan_completed", user_id=user_id, subscription_id=subscription_id)
            if subscription_id:
                await self.provider.cancel_at_period_end(subscription_id)

        return EventOutcome.APPLIED

    async def _handle_payment_failed(self, event: ProviderEvent) -> EventOutcome:
        """Record the failure for the UI. No tier change: dunning is Stripe's job."""
        user_id = await self._user_for_customer(event)
        if user_id is None:
            return EventOutcome.IGNORED

        invoice = event.data_object
        failed_at = _from_timestamp(event.created) or datetime.now(UTC)
        await self.store.apply_with_retry(user_id, PaymentFailed(failed_at=failed_at))
        logger.info("payment_failed_recorded", user_id=user_id, invoice_id=invoice.get("id"))

        await self.audit.record(
            user_id,
            "payment_failed",
            provider_event_id=event.id,
            amount=_invoice_amount({"amount_paid": invoice.get("amount_due")}),
            currency=invoice.get("currency"),
            invoice_id=invoice.get("id"),
            attempt_count=invoice.get("attempt_count"),
        )
        return EventOutcome.APPLIED
