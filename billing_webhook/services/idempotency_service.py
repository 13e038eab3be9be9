from __future__ import annotations

from billing_webhook.core.errors import StoreError
from billing_webhook.core.logging import get_logger
from billing_webhook.services.billing_store import TRANSACTIONS, BillingStore

logger = get_logger(__name__)


class IdempotencyGuard:
    """
    Answers "has this payment already been recorded?" before a transaction
    write that may duplicate one made on another path or by a redelivery.

    Payments are matched on payment_id. Checkouts that never create a
    payment intent (zero-amount or fully discounted sessions) have no
    payment_id, so they are matched on order_id, the checkout session id.

    A failed lookup counts as "not recorded": a possible duplicate write is
    preferred over dropping the event, and the unique payment_id constraint
    rejects a real duplicate anyway.
    """

    def __init__(self, store: BillingStore):
        self._store = store

    async def already_recorded(self, payment_id: str | None, *, order_id: str | None = None) -> bool:
        if payment_id:
            key, value = "payment_id", payment_id
        elif order_id:
            key, value = "order_id", order_id
        else:
            return False

        try:
            existing = await self._store.find_one(TRANSACTIONS, key, value)
        except StoreError as e:
            logger.warning("Lookup for %s %s failed, treating as new: %s", key, value, e)
            return False

        return existing is not None
