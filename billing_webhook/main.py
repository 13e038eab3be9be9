from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_webhook.api.deps import AppServices
from billing_webhook.api.dev_endpoints import ENDPOINTS as TEST_ENDPOINTS
from billing_webhook.api.router import build_router
from billing_webhook.core.config import Settings, settings as default_settings
from billing_webhook.core.logging import get_logger, setup_logging
from billing_webhook.core.stripe_config import configure_stripe
from billing_webhook.db.session import build_engine, build_sessionmaker
from billing_webhook.services.access_lock_service import AccessLockManager
from billing_webhook.services.billing_store import BillingStore
from billing_webhook.services.event_dispatcher import EventDispatcher
from billing_webhook.services.idempotency_service import IdempotencyGuard
from billing_webhook.services.retry_service import RetryPolicy
from billing_webhook.services.signature_service import SignatureVerifier
from billing_webhook.services.subscription_state import SubscriptionStateMachine

logger = get_logger(__name__)


def build_services(
    settings: Settings,
    *,
    store: BillingStore | None = None,
    retry: RetryPolicy | None = None,
) -> AppServices:
    """
    Wire the pipeline from explicit settings. Tests pass their own store
    and retry policy.
    """
    engine = None
    if store is None:
        engine = build_engine(settings)
        store = BillingStore(build_sessionmaker(engine))

    retry = retry or RetryPolicy(
        max_attempts=settings.STORE_MAX_ATTEMPTS,
        base_delay=settings.retry_base_delay,
    )
    state_machine = SubscriptionStateMachine(
        default_amount=settings.DEFAULT_SUBSCRIPTION_AMOUNT,
        default_currency=settings.DEFAULT_CURRENCY,
        period_days=settings.BILLING_PERIOD_DAYS,
        ordering_guard=settings.SUBSCRIPTION_ORDERING_GUARD,
    )
    dispatcher = EventDispatcher(
        store,
        state_machine=state_machine,
        guard=IdempotencyGuard(store),
        locks=AccessLockManager(store),
        retry=retry,
    )
    verifier = SignatureVerifier(
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_SIGNATURE_TOLERANCE,
    )
    return AppServices(
        settings=settings,
        store=store,
        verifier=verifier,
        dispatcher=dispatcher,
        retry=retry,
        engine=engine,
    )


def create_app(
    settings: Settings | None = None,
    *,
    store: BillingStore | None = None,
    retry: RetryPolicy | None = None,
) -> FastAPI:
    settings = settings or default_settings
    services = build_services(settings, store=store, retry=retry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings)
        for name in settings.missing_required():
            logger.error("Missing required environment variable: %s", name)
        if not configure_stripe(settings):
            logger.info("STRIPE_API_KEY not set; webhook verification only")
        logger.info(
            "Billing webhook ready (environment=%s, test endpoints=%s)",
            settings.ENVIRONMENT, settings.ENABLE_TEST_ENDPOINTS,
        )

        yield

        # Shutdown: uvicorn has drained in-flight requests by now
        if services.engine is not None:
            await services.engine.dispose()
        logger.info("Billing webhook stopped")

    app = FastAPI(title="NFT Admin Billing Webhook", lifespan=lifespan)
    app.state.services = services
    app.include_router(build_router(include_test_endpoints=settings.ENABLE_TEST_ENDPOINTS))

    available = ["POST /webhook - Stripe webhook handler", "GET /health - Health check"]
    if settings.ENABLE_TEST_ENDPOINTS:
        available += TEST_ENDPOINTS

    @app.exception_handler(StarletteHTTPException)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code != 404:
            return await http_exception_handler(request, exc)
        return JSONResponse(
            status_code=404,
            content={
                "error": "Endpoint not found",
                "message": f"The requested endpoint {request.method} {request.url.path} does not exist",
                "available_endpoints": available,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc) if settings.DEBUG else "Something went wrong",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app


app = create_app()
