from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable

from billing_webhook.core import stripe_config
from billing_webhook.core.errors import DuplicateRecordError, EventValidationError, ProcessingError
from billing_webhook.core.logging import get_logger
from billing_webhook.schemas.events import CheckoutSession, Invoice, PaymentIntent, StripeEvent, Subscription
from billing_webhook.services.access_lock_service import AccessLockManager, LockOutcome
from billing_webhook.services.billing_store import SUBSCRIPTIONS, TRANSACTIONS, BillingStore
from billing_webhook.services.idempotency_service import IdempotencyGuard
from billing_webhook.services.retry_service import RetryPolicy
from billing_webhook.services.subscription_state import (
    SubscriptionStateMachine,
    Transition,
    to_major_units,
)

logger = get_logger(__name__)


@dataclass
class DispatchResult:
    event_id: str
    event_type: str
    handled: bool = True
    writes: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    lock_outcomes: list[LockOutcome] = field(default_factory=list)


EventHandler = Callable[[StripeEvent, DispatchResult], Awaitable[None]]


def _expect(payload: Any, model: type, event: StripeEvent):
    if not isinstance(payload, model):
        raise EventValidationError(f"invalid payload for {event.type}: expected {model.__name__}")
    return payload


class EventDispatcher:
    """
    Routes verified events to their handler. Unknown event types are
    acknowledged without side effects; anything that escapes a handler
    (typically an exhausted retry) becomes a ProcessingError so the endpoint
    can ask Stripe to redeliver.

    Every handler is safe to run again for the same event: transaction
    inserts go through the IdempotencyGuard and the payment_id unique key,
    subscription writes are upserts on subscription_id.
    """

    def __init__(
        self,
        store: BillingStore,
        *,
        state_machine: SubscriptionStateMachine | None = None,
        guard: IdempotencyGuard | None = None,
        locks: AccessLockManager | None = None,
        retry: RetryPolicy | None = None,
    ):
        self._store = store
        self._state = state_machine or SubscriptionStateMachine()
        self._guard = guard or IdempotencyGuard(store)
        self._locks = locks or AccessLockManager(store)
        self._retry = retry or RetryPolicy()

        self._handlers: dict[str, EventHandler] = {
            stripe_config.CHECKOUT_SESSION_COMPLETED: self.handle_checkout_completed,
            stripe_config.INVOICE_PAYMENT_SUCCEEDED: self.handle_invoice_paid,
            stripe_config.INVOICE_PAID: self.handle_invoice_paid,
            stripe_config.INVOICE_PAYMENT_FAILED: self.handle_invoice_failed,
            stripe_config.SUBSCRIPTION_CREATED: self.handle_subscription_created,
            stripe_config.SUBSCRIPTION_UPDATED: self.handle_subscription_updated,
            stripe_config.SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            stripe_config.PAYMENT_INTENT_SUCCEEDED: self.handle_payment_intent_succeeded,
            stripe_config.PAYMENT_INTENT_FAILED: self.handle_payment_intent_failed,
        }

    @property
    def handled_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: StripeEvent) -> DispatchResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled event type: %s (%s)", event.type, event.id)
            return DispatchResult(event_id=event.id, event_type=event.type, handled=False)

        logger.info("Processing %s - ID: %s", event.type, event.id)
        result = DispatchResult(event_id=event.id, event_type=event.type)
        try:
            await handler(event, result)
        except Exception as e:
            logger.exception("Error processing %s (%s)", event.type, event.id)
            raise ProcessingError(event.id, event.type, str(e)) from e

        logger.info(
            "Processed %s - ID: %s (writes=%s skipped=%s)",
            event.type, event.id, result.writes, result.skipped,
        )
        return result

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------
    async def _record_transaction(self, record: dict[str, Any], result: DispatchResult) -> None:
        payment_id = record.get("payment_id")
        order_id = record.get("order_id")
        if await self._guard.already_recorded(payment_id, order_id=order_id):
            logger.info("Payment %s (order %s) already recorded, skipping", payment_id, order_id)
            result.skipped.append(TRANSACTIONS)
            return

        try:
            await self._retry.run(
                lambda: self._store.insert(TRANSACTIONS, record),
                name=f"insert {TRANSACTIONS} {payment_id}",
            )
        except DuplicateRecordError:
            # Lost a race with another delivery of the same payment
            logger.info("Payment %s recorded concurrently, skipping", payment_id)
            result.skipped.append(TRANSACTIONS)
            return

        result.writes.append(TRANSACTIONS)

    async def _apply_transition(self, transition: Transition | None, result: DispatchResult) -> None:
        if transition is None:
            return

        applied = await self._retry.run(
            lambda: self._store.upsert(
                SUBSCRIPTIONS,
                transition.record,
                "subscription_id",
                guards=transition.guards,
            ),
            name=f"upsert {SUBSCRIPTIONS} {transition.subscription_id}",
        )
        if applied:
            result.writes.append(SUBSCRIPTIONS)
        else:
            logger.warning(
                "Subscription %s not moved to %s (canceled or newer event already applied)",
                transition.subscription_id, transition.status,
            )
            result.skipped.append(SUBSCRIPTIONS)

        if transition.lock_reason:
            outcome = await self._locks.lock(transition.lock_user_id, transition.lock_reason)
            result.lock_outcomes.append(outcome)

    @staticmethod
    def _first_method(types: list[str]) -> str:
        return types[0] if types else "card"

    @staticmethod
    def _amount(minor: int | None, event: StripeEvent) -> Decimal:
        amount = to_major_units(minor)
        if amount is None:
            raise EventValidationError(f"invalid {event.type} payload: missing amount")
        return amount

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def handle_checkout_completed(self, event: StripeEvent, result: DispatchResult) -> None:
        session: CheckoutSession = _expect(event.payload, CheckoutSession, event)

        method = self._first_method(session.payment_method_types)
        is_bnpl = method in stripe_config.BNPL_PAYMENT_METHODS

        if is_bnpl or session.mode == "payment":
            await self._record_transaction(
                {
                    "user_id": session.client_reference_id or session.customer,
                    "order_id": session.id,
                    "payment_id": session.payment_intent,
                    "payment_method": method,
                    "amount_paid": self._amount(session.amount_total, event),
                    "bnpl_status": "success",
                    "user_email": session.customer_email,
                    "metadata": {
                        "stripe_session": session.id,
                        "currency": session.currency,
                        "customer_email": session.customer_email,
                    },
                },
                result,
            )

        await self._apply_transition(
            self._state.on_checkout_completed(session, created=event.created),
            result,
        )

    async def handle_invoice_paid(self, event: StripeEvent, result: DispatchResult) -> None:
        invoice: Invoice = _expect(event.payload, Invoice, event)
        await self._apply_transition(self._state.on_invoice_paid(invoice, created=event.created), result)

    async def handle_invoice_failed(self, event: StripeEvent, result: DispatchResult) -> None:
        invoice: Invoice = _expect(event.payload, Invoice, event)
        await self._apply_transition(self._state.on_invoice_failed(invoice, created=event.created), result)

    async def handle_subscription_created(self, event: StripeEvent, result: DispatchResult) -> None:
        sub: Subscription = _expect(event.payload, Subscription, event)
        await self._apply_transition(self._state.on_subscription_created(sub, created=event.created), result)

    async def handle_subscription_updated(self, event: StripeEvent, result: DispatchResult) -> None:
        sub: Subscription = _expect(event.payload, Subscription, event)
        await self._apply_transition(self._state.on_subscription_updated(sub, created=event.created), result)

    async def handle_subscription_deleted(self, event: StripeEvent, result: DispatchResult) -> None:
        sub: Subscription = _expect(event.payload, Subscription, event)
        await self._apply_transition(self._state.on_subscription_deleted(sub, created=event.created), result)

    async def handle_payment_intent_succeeded(self, event: StripeEvent, result: DispatchResult) -> None:
        intent: PaymentIntent = _expect(event.payload, PaymentIntent, event)
        await self._record_transaction(
            {
                **self._intent_record(intent, event),
                "bnpl_status": "success",
                "metadata": {
                    "currency": intent.currency,
                    "receipt_email": intent.receipt_email,
                },
            },
            result,
        )

    async def handle_payment_intent_failed(self, event: StripeEvent, result: DispatchResult) -> None:
        intent: PaymentIntent = _expect(event.payload, PaymentIntent, event)
        error = intent.last_payment_error
        await self._record_transaction(
            {
                **self._intent_record(intent, event),
                "bnpl_status": "failed",
                "metadata": {
                    "error_code": error.code if error else None,
                    "error_message": error.message if error else None,
                    "decline_code": error.decline_code if error else None,
                },
            },
            result,
        )

    def _intent_record(self, intent: PaymentIntent, event: StripeEvent) -> dict[str, Any]:
        return {
            "user_id": intent.customer or intent.metadata.get("user_id"),
            "order_id": intent.metadata.get("order_id") or intent.id,
            "payment_id": intent.id,
            "payment_method": self._first_method(intent.payment_method_types),
            "amount_paid": self._amount(intent.amount, event),
        }
