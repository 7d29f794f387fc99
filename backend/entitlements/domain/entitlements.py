"""Entitlement resolution: subscription record + tier catalog → feature/quota set.

Pure function, no I/O. Callers resolve against a freshly read record every
time, so an entitlement never outlives the tier change that invalidated it.
"""

from typing import Protocol

from pydantic import BaseModel

from entitlements.domain.tiers import AcceleratorAccess, ResourceType, get_tier_definition


class _HasTier(Protocol):
    tier: str
    accelerator_access: str


class EntitlementSet(BaseModel):
    """Resolved quotas (None = unbounded) and feature flags for one user."""

    tier: str
    max_transactions: int | None
    max_reports: int | None
    max_users: int | None
    can_export_data: bool
    has_advanced_analytics: bool
    has_accelerator_access: bool
    has_phone_support: bool
    has_custom_branding: bool

    def limit_for(self, resource_type: ResourceType) -> int | None:
        return {
            ResourceType.TRANSACTIONS: self.max_transactions,
            ResourceType.REPORTS: self.max_reports,
            ResourceType.USERS: self.max_users,
        }[resource_type]


def resolve(record: _HasTier) -> EntitlementSet:
    """Derive the entitlement set for a subscription record."""
    definition = get_tier_definition(record.tier)
    enrolled = AcceleratorAccess(record.accelerator_access) in (
        AcceleratorAccess.ENROLLED,
        AcceleratorAccess.COMPLETED,
    )

    return EntitlementSet(
        tier=definition.tier.value,
        max_transactions=definition.max_transactions,
        max_reports=definition.max_reports,
        max_users=definition.max_users,
        can_export_data=definition.can_export_data,
        has_advanced_analytics=definition.has_advanced_analytics,
        has_accelerator_access=definition.grants_accelerator or enrolled,
        has_phone_support=definition.has_phone_support,
        has_custom_branding=definition.has_custom_branding,
    )
