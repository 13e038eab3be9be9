from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from billing_webhook.core import stripe_config
from billing_webhook.core.errors import EventValidationError


def _expandable_id(value: Any) -> Any:
    """
    Stripe sends either an id string or, when expanded, the whole object.
    We only ever store the id.
    """
    if isinstance(value, dict):
        return value.get("id")
    return value


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str


class CustomerDetails(BaseModel):
    email: str | None = None


class LastPaymentError(BaseModel):
    code: str | None = None
    message: str | None = None
    decline_code: str | None = None


class Price(BaseModel):
    id: str | None = None
    unit_amount: int | None = None


class SubscriptionItem(BaseModel):
    price: Price | None = None
    # Newer API versions report the period per item
    current_period_end: int | None = None


class SubscriptionItemList(BaseModel):
    data: list[SubscriptionItem] = Field(default_factory=list)


class CancellationDetails(BaseModel):
    reason: str | None = None


class CheckoutSession(_StripeObject):
    mode: str | None = None
    customer: str | None = None
    client_reference_id: str | None = None
    subscription: str | None = None
    payment_intent: str | None = None
    payment_method_types: list[str] = Field(default_factory=list)
    amount_total: int | None = None
    currency: str | None = None
    customer_details: CustomerDetails | None = None

    @field_validator("customer", "subscription", "payment_intent", mode="before")
    @classmethod
    def collapse_expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def customer_email(self) -> str | None:
        return self.customer_details.email if self.customer_details else None


class Invoice(_StripeObject):
    customer: str | None = None
    subscription: str | None = None
    total: int | None = None
    currency: str | None = None
    created: int | None = None
    last_payment_error: LastPaymentError | None = None
    # API 2025-03 moved the subscription reference under parent
    parent: dict[str, Any] | None = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def collapse_expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))


class Subscription(_StripeObject):
    customer: str | None = None
    status: str | None = None
    created: int | None = None
    current_period_end: int | None = None
    currency: str | None = None
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    trial_end: int | None = None
    cancel_at_period_end: bool | None = None
    canceled_at: int | None = None
    cancellation_details: CancellationDetails | None = None

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def first_price(self) -> Price | None:
        if self.items.data and self.items.data[0].price:
            return self.items.data[0].price
        return None

    @property
    def period_end(self) -> int | None:
        if self.current_period_end:
            return self.current_period_end
        if self.items.data:
            return self.items.data[0].current_period_end
        return None


class PaymentIntent(_StripeObject):
    customer: str | None = None
    amount: int | None = None
    currency: str | None = None
    payment_method_types: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    receipt_email: str | None = None
    last_payment_error: LastPaymentError | None = None

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_expanded_ids(cls, value: Any) -> Any:
        return _expandable_id(value)


PAYLOAD_MODELS: dict[str, type[_StripeObject]] = {
    stripe_config.CHECKOUT_SESSION_COMPLETED: CheckoutSession,
    stripe_config.INVOICE_PAYMENT_SUCCEEDED: Invoice,
    stripe_config.INVOICE_PAID: Invoice,
    stripe_config.INVOICE_PAYMENT_FAILED: Invoice,
    stripe_config.SUBSCRIPTION_CREATED: Subscription,
    stripe_config.SUBSCRIPTION_UPDATED: Subscription,
    stripe_config.SUBSCRIPTION_DELETED: Subscription,
    stripe_config.PAYMENT_INTENT_SUCCEEDED: PaymentIntent,
    stripe_config.PAYMENT_INTENT_FAILED: PaymentIntent,
}


class StripeEvent(BaseModel):
    """
    A verified webhook event. Unrecognized types keep their payload as a
    plain dict so new provider events can still be acknowledged.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    created: int = 0
    # CheckoutSession | Invoice | Subscription | PaymentIntent, or the raw dict
    payload: Any
    received_at: datetime


def parse_event(body: Any, *, received_at: datetime) -> StripeEvent:
    """
    Build a typed StripeEvent from a decoded webhook body.
    Raises EventValidationError when required fields are missing.
    """
    if not isinstance(body, dict):
        raise EventValidationError("invalid event body: expected a JSON object")

    event_id = body.get("id")
    event_type = body.get("type")
    if not event_id or not event_type:
        raise EventValidationError("invalid event: missing id or type")

    raw_object = (body.get("data") or {}).get("object")
    if not isinstance(raw_object, dict):
        raise EventValidationError(f"invalid event {event_id}: missing data.object")

    model = PAYLOAD_MODELS.get(event_type)
    try:
        payload = model.model_validate(raw_object) if model else raw_object
        return StripeEvent(
            id=event_id,
            type=event_type,
            created=int(body.get("created") or 0),
            payload=payload,
            received_at=received_at,
        )
    except (ValidationError, TypeError, ValueError) as e:
        raise EventValidationError(f"invalid {event_type} payload for event {event_id}: {e}") from e
