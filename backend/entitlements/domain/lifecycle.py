"""Subscription lifecycle states derived from a subscription record."""

from enum import Enum

from entitlements.domain.tiers import Tier


class SubscriptionState(str, Enum):
    STARTER = "starter"  # no paid plan
    ACTIVE = "active"  # paid tier, renewing
    CANCELING = "canceling"  # paid tier, cancels at period end


# Valid lifecycle transitions
TRANSITIONS = {
    SubscriptionState.STARTER: [SubscriptionState.ACTIVE],  # checkout completed
    SubscriptionState.ACTIVE: [
        SubscriptionState.CANCELING,  # cancel requested / installments complete
        SubscriptionState.STARTER,  # subscription deleted
    ],
    SubscriptionState.CANCELING: [
        SubscriptionState.STARTER,  # deleted at period end
        SubscriptionState.ACTIVE,  # cancellation withdrawn in the provider portal
    ],
}


def lifecycle_state(record) -> SubscriptionState:
    """Derive the lifecycle state of a subscription record."""
    if Tier(record.tier) == Tier.STARTER:
        return SubscriptionState.STARTER
    if record.cancel_at_period_end:
        return SubscriptionState.CANCELING
    return SubscriptionState.ACTIVE


def is_expected_transition(before: SubscriptionState, after: SubscriptionState) -> bool:
    """True for a self-transition or a transition listed in TRANSITIONS.

    Provider events can arrive out of order, so an unexpected transition is
    still applied; callers log it for reconciliation.
    """
    return before == after or after in TRANSITIONS[before]
