from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from billing_webhook.core.errors import FinalError, TransientStoreError
from billing_webhook.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay after failed attempt number `attempt` (1-based)."""
    return base_delay * 2 ** (attempt - 1)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (TransientStoreError,),
    sleep: SleepFn = asyncio.sleep,
    name: str = "store operation",
) -> T:
    """
    Run `operation`, retrying failures listed in `retry_on` with exponential
    backoff (base_delay, 2*base_delay, ...). After `max_attempts` consecutive
    failures the last error is raised as FinalError. Anything not in
    `retry_on` propagates on the first occurrence.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == max_attempts:
                logger.error("%s failed after %d attempts: %s", name, attempt, e)
                raise FinalError(name, attempt, e) from e

            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                name, attempt, max_attempts, e, delay,
            )
            await sleep(delay)

    raise AssertionError("unreachable")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings shared by every write the dispatcher makes."""
    max_attempts: int = 3
    base_delay: float = 1.0
    sleep: SleepFn = asyncio.sleep

    async def run(self, operation: Callable[[], Awaitable[T]], *, name: str) -> T:
        return await with_retry(
            operation,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self.sleep,
            name=name,
        )
