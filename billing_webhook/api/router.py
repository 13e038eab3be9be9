from fastapi import APIRouter

from billing_webhook.api import dev_endpoints, health, stripe_webhook


def build_router(*, include_test_endpoints: bool = False) -> APIRouter:
    router = APIRouter()
    router.include_router(health.router, tags=["health"])
    router.include_router(stripe_webhook.router, tags=["payments"])

    # Dev only
    if include_test_endpoints:
        router.include_router(dev_endpoints.router, tags=["test"])

    return router
