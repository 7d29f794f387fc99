"""Reconciler: re-pulls subscription state from Stripe.

Webhooks are the fast path. This is the safety net for events that failed
part-way (their ProcessedEvent rows stay ``failed`` and are never replayed),
for events whose worker died before recording an outcome, and for effects
that arrived out of order. Subscription state is re-pulled as a whole; a
payment is not part of that state, so a failed payment event is fetched
back from Stripe and applied once, keyed on the audit trail.

Runs as an asyncio.Task started by the app lifespan when
RECONCILIATION_ENABLED is set; a failure for one user is logged and never
stops the loop.
"""

import asyncio
from dataclasses import dataclass

import structlog

from entitlements.billing.deduplicator import EventDeduplicator
from entitlements.billing.processor import payment_mutation, subscription_mutation
from entitlements.billing.provider import StripeProvider
from entitlements.billing.verifier import event_from_dict
from entitlements.core.config import get_settings
from entitlements.core.exceptions import (
    EntitlementsError,
    MalformedPayload,
    ProviderNotConfigured,
    ProviderUnavailable,
    VersionConflict,
)
from entitlements.db.models.processed_event import ProcessedEvent
from entitlements.db.models.subscription_record import SubscriptionRecord
from entitlements.domain.mutations import CancellationRequested, SubscriptionEnded
from entitlements.services.audit import AuditLog
from entitlements.services.subscription_store import SubscriptionStore, as_utc

logger = structlog.get_logger(__name__)

PAYMENT_EVENT_TYPE = "invoice.payment_succeeded"
PAYMENT_AUDIT_TYPE = "payment_succeeded"


@dataclass
class ReconcileReport:
    users_checked: int = 0
    users_failed: int = 0
    events_reconciled: int = 0


class Reconciler:
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

    async def reconcile_user(self, user_id: str) -> SubscriptionRecord | None:
        """Bring one user's record in line with Stripe.

        Users without a Stripe customer are left alone. Raises
        ProviderUnavailable / ProviderNotConfigured from the Stripe call.
        """
        record = await self.store.get(user_id)
        if record is None or not record.provider_customer_id:
            return record

        live = await self.provider.get_live_subscription(record.provider_customer_id)
        if live is None:
            if record.provider_subscription_id is None:
                return record
            logger.info("reconcile_subscription_gone", user_id=user_id)
            return await self.store.apply_with_retry(user_id, SubscriptionEnded())

        record = await self.store.apply_with_retry(user_id, subscription_mutation(live))

        # Installment plan finished but the cancel call never reached Stripe
        threshold = get_settings().installment_payment_count
        if record.installment_plan and record.installment_payments >= threshold and not live.get(
            "cancel_at_period_end"
        ):
            logger.info("reconcile_installment_cancel", user_id=user_id, subscription_id=live["id"])
            await self.provider.cancel_at_period_end(live["id"])
            record = await self.store.apply_with_retry(user_id, CancellationRequested())

        logger.debug("reconcile_user_done", user_id=user_id, tier=record.tier, version=record.version)
        return record

    async def recover_payment(self, event: ProcessedEvent, record: SubscriptionRecord) -> bool:
        """Apply a failed invoice.payment_succeeded event that never committed.

        The webhook writes its audit entry right after the payment commits, so
        an audit entry for the event id means there is nothing to recover. The
        invoice is re-read from the event as Stripe stored it. Returns True
        when the payment was applied here.

        Raises ProviderUnavailable / MalformedPayload when the event can't be
        fetched, and VersionConflict from the write.
        """
        if await self.audit.has_event(event.provider_event_id, PAYMENT_AUDIT_TYPE):
            return False

        provider_event = event_from_dict(await self.provider.retrieve_event(event.provider_event_id))
        mutation = payment_mutation(provider_event, record)
        if record.last_payment_date is not None and as_utc(record.last_payment_date) == mutation.paid_at:
            # Committed, but the worker died before the audit write
            logger.warning(
                "reconcile_payment_already_applied", event_id=event.provider_event_id, user_id=record.user_id
            )
            return False

        committed = await self.store.apply_with_retry(record.user_id, mutation)
        logger.info(
            "reconcile_payment_recovered",
            event_id=event.provider_event_id,
            user_id=record.user_id,
            amount=str(mutation.amount),
            total_paid=str(committed.total_paid),
        )
        await self.audit.record(
            record.user_id,
            PAYMENT_AUDIT_TYPE,
            provider_event_id=event.provider_event_id,
            amount=mutation.amount,
            currency=mutation.currency,
            invoice_id=provider_event.data_object.get("id"),
            installment=mutation.counts_as_installment(),
            recovered=True,
        )
        return True

    async def reconcile_failed_events(self, limit: int | None = None) -> int:
        """Reconcile the customers behind failed or abandoned webhook events. Returns events resolved.

        An event stays unreconciled (and is retried next pass) while Stripe
        can't be reached or the record keeps conflicting.
        """
        settings = get_settings()
        limit = limit or settings.reconciliation_batch_size
        # Twice the handler timeout: a row this old with no outcome has no live worker
        stale_after = settings.webhook_processing_timeout_seconds * 2
        resolved = 0

        for event in await self.deduplicator.list_failed(limit=limit, stale_after_seconds=stale_after):
            record = await self.store.find_by_customer(event.customer_id) if event.customer_id else None
            if record is not None:
                try:
                    if event.event_type == PAYMENT_EVENT_TYPE:
                        await self.recover_payment(event, record)
                    await self.reconcile_user(record.user_id)
                except (ProviderUnavailable, VersionConflict, MalformedPayload) as exc:
                    logger.warning(
                        "reconcile_failed_event_deferred",
                        event_id=event.provider_event_id,
                        user_id=record.user_id,
                        error=str(exc),
                    )
                    continue
            else:
                logger.info("reconcile_failed_event_no_customer", event_id=event.provider_event_id)

            await self.deduplicator.mark_reconciled(event.provider_event_id)
            resolved += 1

        if resolved:
            logger.info("reconcile_failed_events_done", resolved=resolved)
        return resolved

    async def reconcile_all(self, batch_size: int | None = None) -> ReconcileReport:
        """Walk every linked record in pages of ``batch_size``."""
        batch_size = batch_size or get_settings().reconciliation_batch_size
        report = ReconcileReport()
        offset = 0

        while True:
            batch = await self.store.list_linked(limit=batch_size, offset=offset)
            for record in batch:
                report.users_checked += 1
                try:
                    await self.reconcile_user(record.user_id)
                except ProviderNotConfigured:
                    raise
                except EntitlementsError as exc:
                    report.users_failed += 1
                    logger.warning("reconcile_user_failed", user_id=record.user_id, error=str(exc))
            if len(batch) < batch_size:
                break
            offset += batch_size

        logger.info("reconcile_all_done", checked=report.users_checked, failed=report.users_failed)
        return report

    async def run_once(self) -> ReconcileReport:
        events = await self.reconcile_failed_events()
        report = await self.reconcile_all()
        report.events_reconciled = events
        return report

    async def run_forever(self, interval_seconds: int | None = None) -> None:
        """Reconcile every ``interval_seconds`` until cancelled.

        Intended to run as: ``asyncio.create_task(reconciler.run_forever())``
        """
        interval = interval_seconds or get_settings().reconciliation_interval_seconds
        logger.info("reconciliation_started", interval_seconds=interval)

        while True:
            try:
                await self.run_once()
            except ProviderNotConfigured:
                logger.warning("reconciliation_skipped_provider_not_configured")
            except Exception as exc:
                # Non-fatal: next tick retries
                logger.error("reconciliation_pass_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(interval)
