"""Tier catalog — static tier → quota and feature mapping.

Pure data, no I/O. Quota limits use ``None`` as the unbounded sentinel.
"""

from dataclasses import dataclass
from enum import Enum

from entitlements.core.config import get_settings


class Tier(str, Enum):
    """Subscription tiers, lowest first."""

    STARTER = "starter"
    GROWTH = "growth"
    ACCELERATE = "accelerate"


class AcceleratorAccess(str, Enum):
    """Growth Accelerator program enrollment (independent of platform tier)."""

    NONE = "none"
    ENROLLED = "enrolled"
    COMPLETED = "completed"


class ResourceType(str, Enum):
    """Metered resources."""

    TRANSACTIONS = "transactions"
    REPORTS = "reports"
    USERS = "users"


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    name: str
    max_transactions: int | None
    max_reports: int | None
    max_users: int | None
    can_export_data: bool
    has_advanced_analytics: bool
    grants_accelerator: bool
    has_phone_support: bool
    has_custom_branding: bool

    def limit_for(self, resource_type: ResourceType) -> int | None:
        """Quota for a metered resource (None = unbounded)."""
        return {
            ResourceType.TRANSACTIONS: self.max_transactions,
            ResourceType.REPORTS: self.max_reports,
            ResourceType.USERS: self.max_users,
        }[resource_type]


TIER_CATALOG: dict[Tier, TierDefinition] = {
    Tier.STARTER: TierDefinition(
        tier=Tier.STARTER,
        name="Starter",
        max_transactions=20,
        max_reports=3,
        max_users=1,
        can_export_data=False,
        has_advanced_analytics=False,
        grants_accelerator=False,
        has_phone_support=False,
        has_custom_branding=False,
    ),
    Tier.GROWTH: TierDefinition(
        tier=Tier.GROWTH,
        name="Growth",
        max_transactions=500,
        max_reports=20,
        max_users=3,
        can_export_data=True,
        has_advanced_analytics=True,
        grants_accelerator=True,
        has_phone_support=False,
        has_custom_branding=False,
    ),
    Tier.ACCELERATE: TierDefinition(
        tier=Tier.ACCELERATE,
        name="Accelerate",
        max_transactions=None,
        max_reports=None,
        max_users=10,
        can_export_data=True,
        has_advanced_analytics=True,
        grants_accelerator=True,
        has_phone_support=True,
        has_custom_branding=True,
    ),
}

DEFAULT_TIER = Tier.STARTER


def get_tier_definition(tier: Tier | str) -> TierDefinition:
    """Look up a tier definition. Raises ValueError for an unknown tier."""
    return TIER_CATALOG[Tier(tier)]


# ── Stripe price → tier ─────────────────────────────────────────────

PRICE_MAP: dict[str, tuple[Tier, str]] = {}


def _build_price_map() -> dict[str, tuple[Tier, str]]:
    """Build a mapping of Stripe Price ID -> (tier, interval) from config."""
    if PRICE_MAP:
        return PRICE_MAP

    settings = get_settings()
    mapping = {
        settings.stripe_price_growth_monthly: (Tier.GROWTH, "monthly"),
        settings.stripe_price_growth_annual: (Tier.GROWTH, "annual"),
        settings.stripe_price_growth_founding_monthly: (Tier.GROWTH, "monthly"),
        settings.stripe_price_growth_founding_annual: (Tier.GROWTH, "annual"),
        settings.stripe_price_accelerate_monthly: (Tier.ACCELERATE, "monthly"),
        settings.stripe_price_accelerate_annual: (Tier.ACCELERATE, "annual"),
    }
    PRICE_MAP.update({price_id: value for price_id, value in mapping.items() if price_id})
    return PRICE_MAP


def parse_tier(value: str | None) -> Tier | None:
    """Exact, case-insensitive tier name match. No keyword guessing."""
    if not value:
        return None
    try:
        return Tier(value.strip().lower())
    except ValueError:
        return None


def tier_for_price(price_id: str | None, plan_hint: str | None = None) -> Tier | None:
    """Resolve the tier a provider price represents.

    Configured price IDs win; otherwise ``plan_hint`` (the price's lookup key
    or the subscription's ``tier`` metadata) must name a tier exactly.
    Returns None when neither identifies a tier.
    """
    if price_id:
        entry = _build_price_map().get(price_id)
        if entry is not None:
            return entry[0]
    return parse_tier(plan_hint)


def interval_for_price(price_id: str | None) -> str | None:
    """Billing interval for a configured price ID, if known."""
    if not price_id:
        return None
    entry = _build_price_map().get(price_id)
    return entry[1] if entry else None
