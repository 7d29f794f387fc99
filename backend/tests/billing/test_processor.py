"""Tests for webhook event processing: effects, idempotency, installments, failures."""

import asyncio
import json
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import select

from entitlements.billing.verifier import parse_event
from entitlements.core.exceptions import (
    EventProcessingError,
    InvalidSignature,
    ProviderNotConfigured,
    ProviderUnavailable,
)
from entitlements.db.models.payment_event import PaymentEventLog
from entitlements.db.models.processed_event import EventOutcome
from entitlements.db.models.subscription_record import SubscriptionRecord
from entitlements.db.models.usage_counter import UsageCounter
from entitlements.domain.entitlements import resolve
from entitlements.domain.lifecycle import SubscriptionState, lifecycle_state
from entitlements.domain.tiers import ResourceType
from webhook_helpers import invoice_object, make_stripe_event, signed_event, subscription_object

pytestmark = pytest.mark.integration


def _event(event_id: str, event_type: str, data: dict, created: int | None = None):
    return parse_event(json.dumps(make_stripe_event(event_id, event_type, data, created=created)))


async def _seed_linked_user(db, user_id: str, customer_id: str, **fields) -> None:
    """Insert a subscription record at version 1 already linked to a Stripe customer."""
    now = datetime.now(UTC)
    async with db() as session:
        session.add(
            SubscriptionRecord(
                user_id=user_id,
                provider_customer_id=customer_id,
                version=1,
                created_at=now,
                last_updated=now,
                **fields,
            )
        )
        await session.commit()


# ============================================================================
# Subscription events
# ============================================================================


async def test_starter_upgraded_to_growth_by_subscription_update(processor, store, ledger, db):
    """starter v1 + subscription.updated(growth) → growth v2 with growth quotas."""
    await _seed_linked_user(db, "user_up", "cus_up")

    result = await processor.process(
        _event("evt_up_1", "customer.subscription.updated", subscription_object("sub_up", "cus_up"))
    )
    assert result.outcome is EventOutcome.APPLIED

    record = await store.get("user_up")
    assert record.tier == "growth"
    assert record.version == 2
    assert record.provider_subscription_id == "sub_up"
    assert record.billing_interval == "monthly"
    assert resolve(record).max_transactions == 500

    # 20 transactions already used: at the starter limit, well inside growth's
    async with db() as session:
        now = datetime.now(UTC)
        session.add(
            UsageCounter(
                user_id="user_up",
                resource_type="transactions",
                period_key="2024-06",
                current=20,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()

    decision = await ledger.check_and_increment("user_up", ResourceType.TRANSACTIONS, 1, "2024-06")
    assert decision.accepted is True
    assert decision.current == 21


async def test_unknown_price_keeps_tier(processor, store, db):
    await _seed_linked_user(db, "user_price", "cus_price", tier="growth")

    await processor.process(
        _event(
            "evt_price_1",
            "customer.subscription.updated",
            subscription_object("sub_price", "cus_price", price_id="price_unmapped"),
        )
    )

    record = await store.get("user_price")
    assert record.tier == "growth"
    assert record.provider_subscription_id == "sub_price"


async def test_lookup_key_names_tier_for_unconfigured_price(processor, store, db):
    await _seed_linked_user(db, "user_lk", "cus_lk")
    subscription = subscription_object("sub_lk", "cus_lk", price_id="price_unmapped")
    subscription["items"]["data"][0]["price"]["lookup_key"] = "accelerate"

    await processor.process(_event("evt_lk_1", "customer.subscription.created", subscription))

    assert (await store.get("user_lk")).tier == "accelerate"


async def test_subscription_deleted_downgrades_and_keeps_accelerator(processor, store, db):
    await _seed_linked_user(
        db, "user_del", "cus_del", tier="growth", provider_subscription_id="sub_del", accelerator_access="enrolled"
    )

    await processor.process(
        _event("evt_del_1", "customer.subscription.deleted", subscription_object("sub_del", "cus_del"))
    )

    record = await store.get("user_del")
    assert record.tier == "starter"
    assert record.provider_subscription_id is None
    assert record.accelerator_access == "enrolled"
    assert resolve(record).has_accelerator_access is True


async def test_deletion_of_superseded_subscription_ignored(processor, store, db):
    await _seed_linked_user(db, "user_old", "cus_old", tier="growth", provider_subscription_id="sub_current")

    result = await processor.process(
        _event("evt_old_1", "customer.subscription.deleted", subscription_object("sub_previous", "cus_old"))
    )

    assert result.outcome is EventOutcome.IGNORED
    assert (await store.get("user_old")).tier == "growth"


async def test_unknown_customer_is_acknowledged_as_ignored(processor, deduplicator):
    result = await processor.process(
        _event("evt_ghost_1", "customer.subscription.updated", subscription_object("sub_x", "cus_nobody"))
    )

    assert result.outcome is EventOutcome.IGNORED
    assert (await deduplicator.get("evt_ghost_1")).outcome == "ignored"


async def test_unhandled_event_type_is_ignored(processor, deduplicator):
    result = await processor.process(_event("evt_other_1", "customer.created", {"id": "cus_new"}))

    assert result.outcome is EventOutcome.IGNORED
    assert (await deduplicator.get("evt_other_1")).outcome == "ignored"


# ============================================================================
# Checkout
# ============================================================================


async def test_checkout_links_customer_and_enrolls_accelerator(processor, store, db):
    session_data = {
        "id": "cs_1",
        "customer": "cus_chk",
        "subscription": "sub_chk",
        "amount_total": 9900,
        "currency": "gbp",
        "metadata": {"userId": "user_chk", "productType": "accelerator", "tier": "growth"},
    }

    await processor.process(_event("evt_chk_1", "checkout.session.completed", session_data))

    record = await store.get("user_chk")
    assert record.provider_customer_id == "cus_chk"
    assert record.provider_subscription_id == "sub_chk"
    assert record.tier == "growth"
    assert record.accelerator_access == "enrolled"

    async with db() as session:
        rows = (await session.execute(select(PaymentEventLog).where(PaymentEventLog.user_id == "user_chk"))).scalars()
        logs = list(rows)
    assert [log.event_type for log in logs] == ["checkout_completed"]
    assert logs[0].amount == Decimal("99.00")


async def test_subscription_created_before_checkout_applied_on_link(processor, store, provider):
    """customer.subscription.created first (no record for the customer yet), then checkout without tier metadata."""
    early = await processor.process(
        _event("evt_ooo_1", "customer.subscription.created", subscription_object("sub_ooo", "cus_ooo"))
    )
    assert early.outcome is EventOutcome.IGNORED

    provider.retrieve_subscription.side_effect = None
    provider.retrieve_subscription.return_value = subscription_object("sub_ooo", "cus_ooo")
    session_data = {"customer": "cus_ooo", "subscription": "sub_ooo", "metadata": {"userId": "user_ooo"}}

    await processor.process(_event("evt_ooo_2", "checkout.session.completed", session_data))

    provider.retrieve_subscription.assert_awaited_once_with("sub_ooo")
    record = await store.get("user_ooo")
    assert record.tier == "growth"
    assert record.provider_subscription_id == "sub_ooo"
    assert record.billing_interval == "monthly"
    assert lifecycle_state(record) is SubscriptionState.ACTIVE


async def test_checkout_ignores_subscription_no_longer_live(processor, store, provider):
    provider.retrieve_subscription.side_effect = None
    provider.retrieve_subscription.return_value = subscription_object(
        "sub_gone", "cus_gone", price_id="price_test_accel_mo", status="canceled"
    )
    session_data = {
        "customer": "cus_gone",
        "subscription": "sub_gone",
        "metadata": {"userId": "user_gone", "tier": "growth"},
    }

    await processor.process(_event("evt_gone_1", "checkout.session.completed", session_data))

    assert (await store.get("user_gone")).tier == "growth"


async def test_checkout_links_customer_without_stripe_key(processor, store, provider):
    provider.retrieve_subscription.side_effect = ProviderNotConfigured("no key")
    session_data = {"customer": "cus_nk", "subscription": "sub_nk", "metadata": {"userId": "user_nk", "tier": "growth"}}

    result = await processor.process(_event("evt_nk_1", "checkout.session.completed", session_data))

    assert result.outcome is EventOutcome.APPLIED
    record = await store.get("user_nk")
    assert record.provider_customer_id == "cus_nk"
    assert record.tier == "growth"


async def test_checkout_without_user_id_ignored(processor):
    result = await processor.process(_event("evt_chk_2", "checkout.session.completed", {"customer": "cus_x"}))
    assert result.outcome is EventOutcome.IGNORED


# ============================================================================
# Payments
# ============================================================================


async def test_payment_replay_counts_once(processor, store, db):
    await _seed_linked_user(db, "user_pay", "cus_pay")
    event = _event("evt_pay_1", "invoice.payment_succeeded", invoice_object("in_1", "cus_pay", 4900))

    first = await processor.process(event)
    second = await processor.process(event)

    assert first.duplicate is False
    assert second.duplicate is True
    record = await store.get("user_pay")
    assert record.total_paid == Decimal("49.00")
    assert record.currency == "GBP"
    assert record.last_payment_date is not None


async def test_installment_plan_completes_on_third_payment_only(processor, store, provider, db):
    await _seed_linked_user(db, "user_inst", "cus_inst", tier="growth", provider_subscription_id="sub_inst")

    for n in (1, 2):
        invoice = invoice_object(f"in_{n}", "cus_inst", 33300, "sub_inst", installment=True)
        await processor.process(_event(f"evt_inst_{n}", "invoice.payment_succeeded", invoice))
    record = await store.get("user_inst")
    assert record.installment_payments == 2
    assert record.cancel_at_period_end is False
    provider.cancel_at_period_end.assert_not_awaited()

    invoice = invoice_object("in_3", "cus_inst", 33300, "sub_inst", installment=True)
    third = _event("evt_inst_3", "invoice.payment_succeeded", invoice)
    await processor.process(third)

    record = await store.get("user_inst")
    assert record.installment_payments == 3
    assert record.cancel_at_period_end is True
    assert record.total_paid == Decimal("999.00")
    provider.cancel_at_period_end.assert_awaited_once_with("sub_inst")

    # Redelivery of the completing invoice changes nothing
    replay = await processor.process(third)
    assert replay.duplicate is True
    assert (await store.get("user_inst")).installment_payments == 3
    provider.cancel_at_period_end.assert_awaited_once()


async def test_zero_amount_installment_invoice_does_not_advance_plan(processor, store, db):
    await _seed_linked_user(db, "user_zero", "cus_zero", installment_plan=True, installment_payments=2)

    await processor.process(
        _event("evt_zero_1", "invoice.payment_succeeded", invoice_object("in_z", "cus_zero", 0, "sub_z", True))
    )

    record = await store.get("user_zero")
    assert record.installment_payments == 2
    assert record.cancel_at_period_end is False


async def test_payment_failed_records_timestamp_without_downgrade(processor, store, db):
    await _seed_linked_user(db, "user_fail", "cus_fail", tier="growth")

    await processor.process(
        _event("evt_fail_1", "invoice.payment_failed", invoice_object("in_f", "cus_fail", 0), created=1718000000)
    )

    record = await store.get("user_fail")
    assert record.tier == "growth"
    assert record.last_payment_failed_at is not None


# ============================================================================
# Failures
# ============================================================================


async def test_provider_failure_marks_event_failed_and_replay_is_acked(processor, store, provider, deduplicator, db):
    await _seed_linked_user(
        db, "user_pf", "cus_pf", provider_subscription_id="sub_pf", installment_plan=True, installment_payments=2
    )
    provider.cancel_at_period_end.side_effect = ProviderUnavailable("stripe down")
    event = _event("evt_pf_1", "invoice.payment_succeeded", invoice_object("in_pf", "cus_pf", 33300, "sub_pf", True))

    with pytest.raises(EventProcessingError) as exc_info:
        await processor.process(event)
    assert exc_info.value.event_id == "evt_pf_1"

    row = await deduplicator.get("evt_pf_1")
    assert row.outcome == "failed"
    assert "stripe down" in row.error

    # The payment itself committed before the provider call and is not re-applied
    replay = await processor.process(event)
    assert replay.duplicate is True
    record = await store.get("user_pf")
    assert record.installment_payments == 3
    assert record.total_paid == Decimal("333.00")


async def test_slow_handler_times_out_as_failure(processor, deduplicator):
    async def _slow(event):
        await asyncio.sleep(5)

    processor._handlers["customer.subscription.updated"] = _slow
    settings = MagicMock(webhook_processing_timeout_seconds=0.05)

    with patch("entitlements.billing.processor.get_settings", return_value=settings):
        with pytest.raises(EventProcessingError, match="timed out"):
            await processor.process(
                _event("evt_slow_1", "customer.subscription.updated", subscription_object("sub_s", "cus_s"))
            )

    assert (await deduplicator.get("evt_slow_1")).outcome == "failed"


# ============================================================================
# Raw delivery
# ============================================================================


async def test_handle_verifies_signature_before_admitting(processor, deduplicator):
    body, _ = signed_event(make_stripe_event("evt_sig_1", "customer.created", {}))

    with pytest.raises(InvalidSignature):
        await processor.handle(body, "t=1,v1=forged")

    assert await deduplicator.get("evt_sig_1") is None


async def test_handle_signed_delivery(processor):
    body, header = signed_event(make_stripe_event("evt_sig_2", "customer.created", {}))

    result = await processor.handle(body.encode(), header)

    assert result.event_id == "evt_sig_2"
    assert result.outcome is EventOutcome.IGNORED
