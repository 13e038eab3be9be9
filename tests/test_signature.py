import json
import time

import pytest

from billing_webhook.core.errors import EventValidationError, VerificationError
from billing_webhook.schemas.events import CheckoutSession, Invoice, PaymentIntent
from billing_webhook.services.signature_service import SignatureVerifier, verify

SECRET = "whsec_test_secret"


def _body(event: dict) -> bytes:
    return json.dumps(event).encode()


def test_accepts_untampered_body(sign_payload, event_factory):
    body = _body(event_factory("checkout.session.completed", {"id": "cs_1", "mode": "payment"}))

    event = verify(body, sign_payload(body, SECRET), SECRET)

    assert event.id == "evt_test_1"
    assert event.type == "checkout.session.completed"
    assert isinstance(event.payload, CheckoutSession)
    assert event.payload.mode == "payment"
    assert event.received_at.tzinfo is not None


def test_rejects_tampered_body(sign_payload, event_factory):
    body = _body(event_factory("invoice.payment_succeeded", {"id": "in_1", "total": 500}))
    header = sign_payload(body, SECRET)
    tampered = body.replace(b"500", b"900")

    with pytest.raises(VerificationError):
        verify(tampered, header, SECRET)


def test_rejects_wrong_secret(sign_payload, event_factory):
    body = _body(event_factory("invoice.payment_succeeded", {"id": "in_1"}))

    with pytest.raises(VerificationError):
        verify(body, sign_payload(body, "whsec_other"), SECRET)


def test_rejects_stale_signature(sign_payload, event_factory):
    body = _body(event_factory("invoice.payment_succeeded", {"id": "in_1"}))
    header = sign_payload(body, SECRET, timestamp=int(time.time()) - 3600)

    with pytest.raises(VerificationError):
        verify(body, header, SECRET, tolerance=300)


def test_accepts_signature_inside_tolerance(sign_payload, event_factory):
    body = _body(event_factory("invoice.payment_succeeded", {"id": "in_1"}))
    header = sign_payload(body, SECRET, timestamp=int(time.time()) - 60)

    event = SignatureVerifier(SECRET, tolerance=300).verify(body, header)

    assert isinstance(event.payload, Invoice)


@pytest.mark.parametrize("header", [None, "", "garbage", "t=notanumber,v1=abc", "v1=deadbeef"])
def test_rejects_missing_or_malformed_header(header, event_factory):
    body = _body(event_factory("payment_intent.succeeded", {"id": "pi_1", "amount": 100}))

    with pytest.raises(VerificationError):
        verify(body, header, SECRET)


def test_rejects_when_secret_not_configured(sign_payload, event_factory):
    body = _body(event_factory("payment_intent.succeeded", {"id": "pi_1"}))

    with pytest.raises(VerificationError):
        verify(body, sign_payload(body, SECRET), "")


def test_signed_but_invalid_json_is_a_validation_error(sign_payload):
    body = b"{not json"

    with pytest.raises(EventValidationError):
        verify(body, sign_payload(body, SECRET), SECRET)


def test_signed_event_without_data_object_is_a_validation_error(sign_payload):
    body = _body({"id": "evt_1", "type": "invoice.payment_failed", "data": {}})

    with pytest.raises(EventValidationError):
        verify(body, sign_payload(body, SECRET), SECRET)


def test_unknown_type_keeps_raw_payload(sign_payload, event_factory):
    body = _body(event_factory("customer.tax_id.created", {"id": "txi_1", "value": "x"}))

    event = verify(body, sign_payload(body, SECRET), SECRET)

    assert event.payload == {"id": "txi_1", "value": "x"}


def test_expanded_customer_collapses_to_id(sign_payload, event_factory):
    body = _body(event_factory(
        "payment_intent.succeeded",
        {"id": "pi_1", "amount": 1000, "customer": {"id": "cus_9", "object": "customer"}},
    ))

    event = verify(body, sign_payload(body, SECRET), SECRET)

    assert isinstance(event.payload, PaymentIntent)
    assert event.payload.customer == "cus_9"


def test_event_is_immutable(sign_payload, event_factory):
    body = _body(event_factory("payment_intent.succeeded", {"id": "pi_1"}))
    event = verify(body, sign_payload(body, SECRET), SECRET)

    with pytest.raises(Exception):
        event.type = "something.else"
