"""Webhook signature verification.

Authenticates a raw Stripe webhook body against the ``stripe-signature``
header (``t=<timestamp>,v1=<hex hmac-sha256>``) with a replay tolerance, then
parses the event envelope. Pure validation: never touches storage.
"""

import json
from dataclasses import dataclass, field
from typing import Any

import stripe

from entitlements.core.exceptions import InvalidSignature, MalformedPayload, MissingSecret

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class ProviderEvent:
    """A verified provider event envelope ``{id, type, data: {object}}``."""

    id: str
    type: str
    data_object: dict[str, Any]
    created: int | None = None
    livemode: bool = False
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def customer_id(self) -> str | None:
        """Provider customer the event concerns, if it names one."""
        customer = self.data_object.get("customer")
        if isinstance(customer, dict):
            return customer.get("id")
        return customer


def verify(
    raw_body: bytes | str,
    signature_header: str | None,
    shared_secret: str | None,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> ProviderEvent:
    """Verify and parse a webhook delivery.

    Raises:
        MissingSecret: the shared secret is not configured
        InvalidSignature: header missing/malformed/mismatched or outside tolerance
        MalformedPayload: the authenticated body is not a valid event envelope
    """
    if not shared_secret:
        raise MissingSecret("Webhook shared secret is not configured")
    if not signature_header:
        raise InvalidSignature("Missing signature header")

    if isinstance(raw_body, bytes):
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayload("Body is not valid UTF-8") from exc
    else:
        payload = raw_body

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, shared_secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(str(exc)) from exc

    return parse_event(payload)


def parse_event(payload: str) -> ProviderEvent:
    """Parse an already-authenticated body into a ProviderEvent."""
    try:
        envelope = json.loads(payload)
    except ValueError as exc:
        raise MalformedPayload("Body is not valid JSON") from exc

    return event_from_dict(envelope)


def event_from_dict(envelope: Any) -> ProviderEvent:
    """Build a ProviderEvent from a decoded envelope (a webhook body or an API-retrieved event)."""
    if not isinstance(envelope, dict):
        raise MalformedPayload("Event envelope must be a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    data = envelope.get("data")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayload("Event is missing 'id'")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload("Event is missing 'type'")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedPayload("Event is missing 'data.object'")

    created = envelope.get("created")
    return ProviderEvent(
        id=event_id,
        type=event_type,
        data_object=data["object"],
        created=created if isinstance(created, int) else None,
        livemode=bool(envelope.get("livemode", False)),
        raw=envelope,
    )
