"""Stripe API client for the calls this service makes outbound.

Outbound calls: listing a customer's subscriptions (reconciliation),
retrieving one subscription (checkout linking), retrieving a past event
(recovering a failed payment webhook), and scheduling cancellation at period
end (user-initiated or installment completion).
"""

from typing import Any

import stripe
import structlog

from entitlements.core.config import get_settings
from entitlements.core.exceptions import ProviderNotConfigured, ProviderUnavailable

logger = structlog.get_logger(__name__)

# Best live subscription wins when a customer has several
LIVE_STATUS_PRIORITY = ("active", "trialing", "past_due")


def to_dict(obj: Any) -> dict[str, Any]:
    """Plain dict view of a StripeObject (or an already-plain dict)."""
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return obj.to_dict()


class StripeProvider:
    def __init__(self, api_key: str | None = None):
        self._api_key = api_key

    def _configure(self) -> None:
        api_key = self._api_key or get_settings().stripe_secret_key
        if not api_key:
            raise ProviderNotConfigured("Stripe secret key is not configured")
        stripe.api_key = api_key

    async def list_subscriptions(self, customer_id: str) -> list[dict[str, Any]]:
        """All non-terminal subscriptions for a customer, as plain dicts."""
        self._configure()
        try:
            result = await stripe.Subscription.list_async(customer=customer_id, status="all", limit=10)
        except stripe.StripeError as exc:
            logger.warning("stripe_list_subscriptions_failed", customer_id=customer_id, error=str(exc))
            raise ProviderUnavailable(str(exc)) from exc
        return [to_dict(sub) for sub in result.data]

    async def get_live_subscription(self, customer_id: str) -> dict[str, Any] | None:
        """The customer's best live subscription (active > trialing > past_due), if any."""
        subscriptions = await self.list_subscriptions(customer_id)
        for status in LIVE_STATUS_PRIORITY:
            for subscription in subscriptions:
                if subscription.get("status") == status:
                    return subscription
        return None

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        self._configure()
        try:
            subscription = await stripe.Subscription.retrieve_async(subscription_id)
        except stripe.StripeError as exc:
            logger.warning("stripe_retrieve_subscription_failed", subscription_id=subscription_id, error=str(exc))
            raise ProviderUnavailable(str(exc)) from exc
        return to_dict(subscription)

    async def retrieve_event(self, event_id: str) -> dict[str, Any]:
        """The event envelope as Stripe stored it. Stripe keeps events for 30 days."""
        self._configure()
        try:
            event = await stripe.Event.retrieve_async(event_id)
        except stripe.StripeError as exc:
            logger.warning("stripe_retrieve_event_failed", event_id=event_id, error=str(exc))
            raise ProviderUnavailable(str(exc)) from exc
        return to_dict(event)

    async def cancel_at_period_end(self, subscription_id: str) -> dict[str, Any]:
        """Schedule cancellation at the end of the current period. Idempotent at Stripe."""
        self._configure()
        try:
            subscription = await stripe.Subscription.modify_async(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as exc:
            logger.warning("stripe_cancel_at_period_end_failed", subscription_id=subscription_id, error=str(exc))
            raise ProviderUnavailable(str(exc)) from exc

        logger.info("stripe_subscription_cancel_scheduled", subscription_id=subscription_id)
        return to_dict(subscription)
