class EntitlementsError(Exception):
    """Base exception for the entitlement sync service."""

    pass


class VerificationError(EntitlementsError):
    """Raised when an inbound webhook cannot be authenticated or parsed."""

    pass


class MissingSecret(VerificationError):
    """Raised when the webhook shared secret is not configured."""

    pass


class InvalidSignature(VerificationError):
    """Raised when the signature header is absent, stale, or does not match."""

    pass


class MalformedPayload(VerificationError):
    """Raised when a verified body is not a parseable event envelope."""

    pass


class VersionConflict(EntitlementsError):
    """Raised when a conditional subscription write loses to a concurrent writer."""

    def __init__(self, user_id: str, expected_version: int):
        self.user_id = user_id
        self.expected_version = expected_version
        super().__init__(f"Subscription for '{user_id}' is no longer at version {expected_version}")


class SubscriptionNotFound(EntitlementsError):
    """Raised when no subscription record exists for a user."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No subscription record for user '{user_id}'")


class ProviderNotConfigured(EntitlementsError):
    """Raised when the payment provider API credential is missing."""

    pass


class ProviderUnavailable(EntitlementsError):
    """Raised when the payment provider API cannot be reached or errors."""

    pass


class EventProcessingError(EntitlementsError):
    """Raised when applying a webhook event's effects fails."""

    def __init__(self, event_id: str, event_type: str, reason: str):
        self.event_id = event_id
        self.event_type = event_type
        self.reason = reason
        super().__init__(f"Failed to apply {event_type} ({event_id}): {reason}")


class CustomerAlreadyLinked(EntitlementsError):
    """Raised when a provider customer is already linked to a different user."""

    def __init__(self, customer_id: str, user_id: str):
        self.customer_id = customer_id
        self.user_id = user_id
        super().__init__(f"Customer '{customer_id}' is linked to another user")
