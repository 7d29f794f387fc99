"""Tests for webhook signature verification and envelope parsing."""

import json
import time

import pytest

from entitlements.billing.verifier import parse_event, verify
from entitlements.core.exceptions import InvalidSignature, MalformedPayload, MissingSecret, VerificationError
from webhook_helpers import WEBHOOK_SECRET, make_stripe_event, sign_payload

pytestmark = pytest.mark.unit


@pytest.fixture
def event_body() -> str:
    return json.dumps(
        make_stripe_event("evt_verify_1", "invoice.payment_succeeded", {"customer": "cus_1"}, created=1718000000)
    )


def test_valid_signature_returns_event(event_body):
    event = verify(event_body.encode(), sign_payload(event_body), WEBHOOK_SECRET)
    assert event.id == "evt_verify_1"
    assert event.type == "invoice.payment_succeeded"
    assert event.customer_id == "cus_1"
    assert event.created == 1718000000


def test_missing_secret_is_a_configuration_error(event_body):
    with pytest.raises(MissingSecret):
        verify(event_body, sign_payload(event_body), "")


def test_missing_header_rejected(event_body):
    with pytest.raises(InvalidSignature):
        verify(event_body, None, WEBHOOK_SECRET)


def test_wrong_secret_rejected(event_body):
    with pytest.raises(InvalidSignature):
        verify(event_body, sign_payload(event_body, secret="whsec_other"), WEBHOOK_SECRET)


def test_tampered_body_rejected(event_body):
    header = sign_payload(event_body)
    tampered = event_body.replace("cus_1", "cus_2")
    with pytest.raises(InvalidSignature):
        verify(tampered, header, WEBHOOK_SECRET)


def test_malformed_header_rejected(event_body):
    with pytest.raises(InvalidSignature):
        verify(event_body, "not-a-signature", WEBHOOK_SECRET)


def test_timestamp_outside_tolerance_rejected(event_body):
    stale = int(time.time()) - 3600
    with pytest.raises(InvalidSignature):
        verify(event_body, sign_payload(event_body, timestamp=stale), WEBHOOK_SECRET, tolerance=300)


def test_signed_but_not_json_is_malformed():
    body = "definitely not json"
    with pytest.raises(MalformedPayload):
        verify(body, sign_payload(body), WEBHOOK_SECRET)


def test_signature_checked_before_payload_shape():
    """An unsigned garbage body is a signature failure, not a parse failure."""
    with pytest.raises(InvalidSignature):
        verify("garbage", "t=1,v1=deadbeef", WEBHOOK_SECRET)


def test_verification_errors_share_a_base():
    assert issubclass(MissingSecret, VerificationError)
    assert issubclass(MalformedPayload, VerificationError)


@pytest.mark.parametrize(
    "envelope",
    [
        [],
        {"type": "x", "data": {"object": {}}},
        {"id": "evt_1", "data": {"object": {}}},
        {"id": "evt_1", "type": "x"},
        {"id": "evt_1", "type": "x", "data": {"object": "nope"}},
    ],
)
def test_parse_event_requires_envelope_fields(envelope):
    with pytest.raises(MalformedPayload):
        parse_event(json.dumps(envelope))


def test_expanded_customer_object_resolves_to_id():
    expanded = {"customer": {"id": "cus_exp", "object": "customer"}}
    event = parse_event(json.dumps(make_stripe_event("evt_2", "x", expanded)))
    assert event.customer_id == "cus_exp"
