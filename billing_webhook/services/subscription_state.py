"""
Subscription status state machine.

Each lifecycle event becomes a Transition: the partial row to upsert on
subscription_id plus an optional access lock. Columns an event does not
carry are left out of the row so the upsert does not overwrite them.

    active ──invoice failed──▶ past_due ──invoice paid──▶ active
      │                           │
      └──────subscription deleted─┴──────────────────────▶ canceled (terminal)

`subscription.updated` maps Stripe's status directly (unpaid counts as
canceled); statuses we do not know are stored as given.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

from billing_webhook.schemas.events import CheckoutSession, Invoice, Subscription
from billing_webhook.services.access_lock_service import (
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_PAYMENT_FAILED,
)
from billing_webhook.services.billing_store import KeepIfEquals, KeepIfNewer, UpsertGuard

ACTIVE = "active"
PAST_DUE = "past_due"
CANCELED = "canceled"
PAUSED = "paused"

TERMINAL_STATUSES = {CANCELED}

PROVIDER_STATUS_MAP = {
    "active": ACTIVE,
    "past_due": PAST_DUE,
    "canceled": CANCELED,
    "unpaid": CANCELED,
    "paused": PAUSED,
}

ORDERING_COLUMN = "last_event_created"


def map_provider_status(status: str | None) -> str:
    if not status:
        return ACTIVE
    return PROVIDER_STATUS_MAP.get(status, status)


def to_major_units(minor: int | None) -> Decimal | None:
    """Stripe amounts are in the currency's minor unit (cents)."""
    if minor is None:
        return None
    return (Decimal(minor) / 100).quantize(Decimal("0.01"))


def _date(ts: int | None) -> date | None:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


def _iso(ts: int | None) -> str | None:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class Transition:
    subscription_id: str
    record: dict[str, Any]
    lock_user_id: str | None = None
    lock_reason: str | None = None
    guards: tuple[UpsertGuard, ...] = field(default=())

    @property
    def status(self) -> str | None:
        return self.record.get("status")


class SubscriptionStateMachine:
    def __init__(
        self,
        *,
        default_amount: Decimal = Decimal("5.00"),
        default_currency: str = "aud",
        period_days: int = 7,
        ordering_guard: bool = False,
        today: Callable[[], date] = lambda: datetime.now(timezone.utc).date(),
    ):
        self._default_amount = default_amount
        self._default_currency = default_currency
        self._period = timedelta(days=period_days)
        self._ordering_guard = ordering_guard
        self._today = today

    def next_billing_date(self) -> date:
        return self._today() + self._period

    def _transition(
        self,
        subscription_id: str,
        record: dict[str, Any],
        *,
        created: int,
        lock_user_id: str | None = None,
        lock_reason: str | None = None,
        clear: tuple[str, ...] = (),
    ) -> Transition:
        # None means "not sent"; only columns named in `clear` are written as NULL
        row = {"subscription_id": subscription_id}
        row.update((k, v) for k, v in record.items() if v is not None)
        row.update((k, None) for k in clear)
        if created:
            row[ORDERING_COLUMN] = created

        guards: list[UpsertGuard] = []
        # canceled is terminal: nothing but another cancel may touch the row
        if row.get("status") not in TERMINAL_STATUSES:
            guards.append(KeepIfEquals("status", CANCELED))
        if self._ordering_guard:
            guards.append(KeepIfNewer(ORDERING_COLUMN))

        return Transition(
            subscription_id=subscription_id,
            record=row,
            lock_user_id=lock_user_id,
            lock_reason=lock_reason,
            guards=tuple(guards),
        )

    def on_checkout_completed(self, session: CheckoutSession, *, created: int) -> Transition | None:
        if session.mode != "subscription" or not session.subscription:
            return None

        amount = to_major_units(session.amount_total)
        return self._transition(
            session.subscription,
            {
                "user_id": session.client_reference_id or session.customer,
                "stripe_customer_id": session.customer,
                "start_date": self._today(),
                "status": ACTIVE,
                "next_billing_date": self.next_billing_date(),
                "amount": amount if amount is not None else self._default_amount,
                "currency": session.currency or self._default_currency,
                "user_email": session.customer_email,
                "metadata": {
                    "stripe_session": session.id,
                    "customer_email": session.customer_email,
                },
            },
            created=created,
        )

    def on_invoice_paid(self, invoice: Invoice, *, created: int) -> Transition | None:
        if not invoice.subscription_id:
            return None

        record: dict[str, Any] = {
            "user_id": invoice.customer,
            "stripe_customer_id": invoice.customer,
            "status": ACTIVE,
            "next_billing_date": self.next_billing_date(),
            "currency": invoice.currency or self._default_currency,
            "metadata": {
                "last_invoice": invoice.id,
                "last_payment_date": _iso(created),
            },
        }
        if invoice.created:
            record["start_date"] = _date(invoice.created)
        if invoice.total is not None:
            record["amount"] = to_major_units(invoice.total)

        return self._transition(invoice.subscription_id, record, created=created)

    def on_invoice_failed(self, invoice: Invoice, *, created: int) -> Transition | None:
        if not invoice.subscription_id:
            return None

        failure = invoice.last_payment_error
        return self._transition(
            invoice.subscription_id,
            {
                "user_id": invoice.customer,
                "stripe_customer_id": invoice.customer,
                "status": PAST_DUE,
                "metadata": {
                    "last_failed_invoice": invoice.id,
                    "failure_reason": (failure.message if failure else None) or "Payment failed",
                    "failed_at": _iso(created),
                },
            },
            created=created,
            lock_user_id=invoice.customer,
            lock_reason=SUBSCRIPTION_PAYMENT_FAILED,
        )

    def on_subscription_created(self, sub: Subscription, *, created: int) -> Transition:
        price = sub.first_price
        amount = to_major_units(price.unit_amount) if price else None

        record: dict[str, Any] = {
            "user_id": sub.customer,
            "stripe_customer_id": sub.customer,
            "status": map_provider_status(sub.status),
            "amount": amount if amount is not None else self._default_amount,
            "currency": sub.currency or self._default_currency,
            "metadata": {
                "plan_id": price.id if price else None,
                "trial_end": _iso(sub.trial_end),
            },
        }
        if sub.created:
            record["start_date"] = _date(sub.created)
        if sub.period_end:
            record["next_billing_date"] = _date(sub.period_end)

        return self._transition(sub.id, record, created=created)

    def on_subscription_updated(self, sub: Subscription, *, created: int) -> Transition:
        status = map_provider_status(sub.status)
        return self._transition(
            sub.id,
            {
                "stripe_customer_id": sub.customer,
                "status": status,
                "next_billing_date": _date(sub.period_end),
                "metadata": {
                    "cancel_at_period_end": sub.cancel_at_period_end,
                    "canceled_at": _iso(sub.canceled_at),
                },
            },
            created=created,
            clear=("next_billing_date",) if status == CANCELED else (),
        )

    def on_subscription_deleted(self, sub: Subscription, *, created: int) -> Transition:
        reason = sub.cancellation_details.reason if sub.cancellation_details else None
        return self._transition(
            sub.id,
            {
                "user_id": sub.customer,
                "stripe_customer_id": sub.customer,
                "status": CANCELED,
                "metadata": {
                    "canceled_at": _iso(sub.canceled_at or created),
                    "cancellation_reason": reason or "user_canceled",
                },
            },
            created=created,
            lock_user_id=sub.customer,
            lock_reason=SUBSCRIPTION_CANCELED,
            clear=("next_billing_date",),
        )
