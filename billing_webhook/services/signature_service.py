from __future__ import annotations

import json
from datetime import datetime, timezone

import stripe

from billing_webhook.core.errors import EventValidationError, VerificationError
from billing_webhook.core.logging import get_logger
from billing_webhook.schemas.events import StripeEvent, parse_event

logger = get_logger(__name__)


class SignatureVerifier:
    """
    Authenticates webhook bodies against the endpoint's signing secret and
    turns them into typed events.

    The signature covers the exact request bytes, so callers must pass the
    raw body, never a re-serialized JSON document.
    """

    def __init__(self, secret: str, *, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self._secret = secret
        self._tolerance = tolerance

    def verify(self, raw_body: bytes, signature_header: str | None) -> StripeEvent:
        return verify(raw_body, signature_header, self._secret, tolerance=self._tolerance)


def verify(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> StripeEvent:
    """
    Raises VerificationError for a missing/malformed/mismatched/stale
    signature and EventValidationError for a signed body that is not a
    usable event.
    """
    if not secret:
        raise VerificationError("webhook signing secret is not configured")
    if not signature_header:
        raise VerificationError("missing Stripe-Signature header")

    try:
        stripe.WebhookSignature.verify_header(
            raw_body.decode("utf-8"),
            signature_header,
            secret,
            tolerance,
        )
    except stripe.SignatureVerificationError as e:
        raise VerificationError(str(e)) from e
    except UnicodeDecodeError as e:
        raise VerificationError("payload is not valid UTF-8") from e

    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as e:
        raise EventValidationError(f"invalid JSON payload: {e}") from e

    event = parse_event(body, received_at=datetime.now(timezone.utc))
    logger.debug("Verified event %s (%s)", event.id, event.type)
    return event
