from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from billing_webhook.core.errors import ProcessingError, StoreError, TransientStoreError
from billing_webhook.schemas.events import parse_event
from billing_webhook.services.event_dispatcher import EventDispatcher
from billing_webhook.services.subscription_state import SubscriptionStateMachine

TODAY = date(2026, 10, 19)


@pytest.fixture
def dispatcher(memory_store, retry):
    return EventDispatcher(
        memory_store,
        state_machine=SubscriptionStateMachine(today=lambda: TODAY),
        retry=retry,
    )


@pytest.fixture
def event(event_factory):
    def _event(event_type, obj, **kwargs):
        return parse_event(event_factory(event_type, obj, **kwargs), received_at=datetime.now(timezone.utc))
    return _event


def _intent(**overrides):
    intent = {
        "id": "pi_1",
        "amount": 2500,
        "currency": "aud",
        "customer": "cus_1",
        "payment_method_types": ["afterpay_clearpay"],
        "metadata": {"order_id": "order_77"},
    }
    intent.update(overrides)
    return intent


async def test_unknown_event_is_acknowledged_without_writes(dispatcher, memory_store, event):
    result = await dispatcher.dispatch(event("customer.tax_id.created", {"id": "txi_1"}))

    assert result.handled is False
    assert memory_store.calls == []


async def test_payment_intent_succeeded_records_transaction(dispatcher, memory_store, event):
    result = await dispatcher.dispatch(event("payment_intent.succeeded", _intent()))

    assert result.writes == ["bnpl_transactions"]
    [row] = memory_store.rows["bnpl_transactions"]
    assert row["payment_id"] == "pi_1"
    assert row["order_id"] == "order_77"
    assert row["user_id"] == "cus_1"
    assert row["payment_method"] == "afterpay_clearpay"
    assert row["amount_paid"] == Decimal("25.00")
    assert row["bnpl_status"] == "success"


async def test_same_payment_delivered_twice_records_once(dispatcher, memory_store, event):
    await dispatcher.dispatch(event("payment_intent.succeeded", _intent()))
    second = await dispatcher.dispatch(event("payment_intent.succeeded", _intent()))

    assert second.skipped == ["bnpl_transactions"]
    assert len(memory_store.rows["bnpl_transactions"]) == 1


async def test_payment_already_recorded_by_checkout_is_skipped(dispatcher, memory_store, event):
    await dispatcher.dispatch(event(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "mode": "payment",
            "payment_intent": "pi_1",
            "amount_total": 2500,
            "customer": "cus_1",
            "payment_method_types": ["klarna"],
        },
    ))
    await dispatcher.dispatch(event("payment_intent.succeeded", _intent()))

    [row] = memory_store.rows["bnpl_transactions"]
    assert row["order_id"] == "cs_1"
    assert row["payment_method"] == "klarna"


async def test_lookup_failure_still_writes(dispatcher, memory_store, event):
    memory_store.fail("find_one", StoreError("lookup timed out"))

    result = await dispatcher.dispatch(event("payment_intent.succeeded", _intent()))

    assert result.writes == ["bnpl_transactions"]
    assert len(memory_store.rows["bnpl_transactions"]) == 1


async def test_payment_intent_failed_records_error_details(dispatcher, memory_store, event):
    await dispatcher.dispatch(event(
        "payment_intent.payment_failed",
        _intent(
            metadata={},
            last_payment_error={"code": "card_declined", "message": "Declined", "decline_code": "insufficient_funds"},
        ),
    ))

    [row] = memory_store.rows["bnpl_transactions"]
    assert row["bnpl_status"] == "failed"
    assert row["order_id"] == "pi_1"
    assert row["metadata"]["decline_code"] == "insufficient_funds"


async def test_invoice_failed_upserts_then_locks(dispatcher, memory_store, event):
    memory_store.rows["users"].append({"id": "cus_456", "subscription_locked": False})

    result = await dispatcher.dispatch(event(
        "invoice.payment_failed",
        {"id": "in_9", "customer": "cus_456", "subscription": "sub_123"},
    ))

    assert memory_store.writes() == [("upsert", "weekly_subscriptions"), ("update", "users")]
    upsert = memory_store.calls[0][2]
    assert upsert["subscription_id"] == "sub_123"
    assert upsert["status"] == "past_due"
    lock = memory_store.calls[1][2]
    assert lock["id"] == "cus_456"
    assert lock["lock_reason"] == "subscription_payment_failed"
    assert lock["subscription_locked"] is True
    assert [o.ok for o in result.lock_outcomes] == [True]


async def test_failed_lock_write_does_not_fail_the_event(dispatcher, memory_store, event):
    memory_store.fail("update", TransientStoreError("users table unavailable"))

    result = await dispatcher.dispatch(event(
        "invoice.payment_failed",
        {"id": "in_9", "customer": "cus_456", "subscription": "sub_123"},
    ))

    assert memory_store.writes() == [("upsert", "weekly_subscriptions"), ("update", "users")]
    [outcome] = result.lock_outcomes
    assert outcome.ok is False
    assert "unavailable" in outcome.error
    assert memory_store.rows["weekly_subscriptions"][0]["status"] == "past_due"


async def test_exhausted_retries_raise_processing_error(dispatcher, memory_store, sleeps, event):
    memory_store.fail("upsert", *[TransientStoreError("db down")] * 3)

    with pytest.raises(ProcessingError) as exc_info:
        await dispatcher.dispatch(event(
            "invoice.payment_succeeded",
            {"id": "in_1", "customer": "cus_1", "subscription": "sub_1", "total": 500},
            event_id="evt_retry",
        ))

    assert exc_info.value.event_id == "evt_retry"
    assert exc_info.value.event_type == "invoice.payment_succeeded"
    assert sleeps.delays == [1.0, 2.0]
    assert memory_store.rows["weekly_subscriptions"] == []


async def test_transient_failure_recovers_within_budget(dispatcher, memory_store, sleeps, event):
    memory_store.fail("upsert", TransientStoreError("blip"))

    result = await dispatcher.dispatch(event(
        "invoice.payment_succeeded",
        {"id": "in_1", "customer": "cus_1", "subscription": "sub_1", "total": 500},
    ))

    assert result.writes == ["weekly_subscriptions"]
    assert sleeps.delays == [1.0]


async def test_canceled_subscription_is_not_resurrected(dispatcher, memory_store, event):
    await dispatcher.dispatch(event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}))
    result = await dispatcher.dispatch(event(
        "invoice.payment_succeeded",
        {"id": "in_late", "customer": "cus_1", "subscription": "sub_1", "total": 500},
    ))

    assert result.skipped == ["weekly_subscriptions"]
    [row] = memory_store.rows["weekly_subscriptions"]
    assert row["status"] == "canceled"
    assert row["next_billing_date"] is None


async def test_checkout_subscription_scenario(dispatcher, memory_store, event):
    await dispatcher.dispatch(event(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "mode": "subscription",
            "subscription": "sub_1",
            "customer": "cus_1",
            "amount_total": 500,
            "payment_method_types": ["card"],
        },
    ))

    assert memory_store.rows["bnpl_transactions"] == []
    [row] = memory_store.rows["weekly_subscriptions"]
    assert row["subscription_id"] == "sub_1"
    assert row["stripe_customer_id"] == "cus_1"
    assert row["status"] == "active"
    assert row["next_billing_date"] == date(2026, 10, 26)
    assert row["amount"] == Decimal("5.00")


async def test_missing_amount_is_reported_as_invalid(dispatcher, event):
    with pytest.raises(ProcessingError) as exc_info:
        await dispatcher.dispatch(event(
            "checkout.session.completed",
            {"id": "cs_1", "mode": "payment", "payment_intent": "pi_1"},
        ))

    assert "invalid" in exc_info.value.message


def test_handled_types(dispatcher):
    assert "customer.subscription.updated" in dispatcher.handled_types
    assert "invoice.paid" in dispatcher.handled_types


async def test_checkout_without_payment_intent_is_matched_on_order(dispatcher, memory_store, event):
    session = {"id": "cs_free", "mode": "payment", "amount_total": 0, "customer": "cus_1"}

    first = await dispatcher.dispatch(event("checkout.session.completed", session))
    second = await dispatcher.dispatch(event("checkout.session.completed", session))

    assert (first.writes, second.skipped) == (["bnpl_transactions"], ["bnpl_transactions"])
    assert len(memory_store.rows["bnpl_transactions"]) == 1
    assert ("find_one", "bnpl_transactions", {"order_id": "cs_free"}) in memory_store.calls


async def test_payment_intent_without_amount_is_reported_as_invalid(dispatcher, memory_store, event):
    intent = _intent()
    del intent["amount"]

    with pytest.raises(ProcessingError) as exc_info:
        await dispatcher.dispatch(event("payment_intent.succeeded", intent))

    assert "invalid" in exc_info.value.message
    assert memory_store.rows["bnpl_transactions"] == []
