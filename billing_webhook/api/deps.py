from __future__ import annotations

import time
from dataclasses import dataclass, field

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from billing_webhook.core.config import Settings
from billing_webhook.services.billing_store import BillingStore
from billing_webhook.services.event_dispatcher import EventDispatcher
from billing_webhook.services.retry_service import RetryPolicy
from billing_webhook.services.signature_service import SignatureVerifier


@dataclass(frozen=True)
class AppServices:
    """
    Everything a request needs, built once at startup and read-only after.
    """
    settings: Settings
    store: BillingStore
    verifier: SignatureVerifier
    dispatcher: EventDispatcher
    retry: RetryPolicy
    engine: AsyncEngine | None = None
    started_at: float = field(default_factory=time.monotonic)


# -----------------------------
# Dependency: services for this app
# -----------------------------
def get_services(request: Request) -> AppServices:
    return request.app.state.services
