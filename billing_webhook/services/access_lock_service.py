from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from billing_webhook.core.logging import get_logger
from billing_webhook.services.billing_store import USERS, BillingStore

logger = get_logger(__name__)

# Lock failures go to their own logger so they can be routed and alerted on
failure_log = get_logger("billing_webhook.access_lock")

SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
SUBSCRIPTION_CANCELED = "subscription_canceled"


@dataclass(frozen=True)
class LockOutcome:
    user_id: str | None
    reason: str
    ok: bool
    error: str | None = None


class AccessLockManager:
    """
    Flags a user's access as locked. Best-effort: a failed lock write is
    reported through LockOutcome and the failure log, never raised, so an
    otherwise processed event is still acknowledged. Locking is idempotent
    and is applied again by the next related event.
    """

    def __init__(
        self,
        store: BillingStore,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._clock = clock

    async def lock(self, user_id: str | None, reason: str) -> LockOutcome:
        if not user_id:
            return self._failed(user_id, reason, "no user id on event")

        logger.info("Locking access for user %s. Reason: %s", user_id, reason)
        try:
            matched = await self._store.update(
                USERS,
                "id",
                user_id,
                {
                    "subscription_locked": True,
                    "lock_reason": reason,
                    "locked_at": self._clock(),
                },
            )
        except Exception as e:
            return self._failed(user_id, reason, str(e))

        if not matched:
            failure_log.warning("Access lock for user %s (%s) matched no user row", user_id, reason)
            return LockOutcome(user_id=user_id, reason=reason, ok=False, error="user not found")

        return LockOutcome(user_id=user_id, reason=reason, ok=True)

    def _failed(self, user_id: str | None, reason: str, error: str) -> LockOutcome:
        failure_log.error("Access lock for user %s (%s) not applied: %s", user_id, reason, error)
        return LockOutcome(user_id=user_id, reason=reason, ok=False, error=error)
