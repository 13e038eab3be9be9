"""
Development-only endpoints that write rows directly. Mounted only when
ENABLE_TEST_ENDPOINTS is set.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from billing_webhook.api.deps import AppServices, get_services
from billing_webhook.core.errors import WebhookError
from billing_webhook.core.logging import get_logger
from billing_webhook.models.common import DevEndpointResponse
from billing_webhook.schemas.records import InsuranceLogIn, SubscriptionIn, TransactionIn
from billing_webhook.services.billing_store import INSURANCE_LOGS, SUBSCRIPTIONS, TRANSACTIONS

logger = get_logger(__name__)

router = APIRouter(prefix="/test")

ENDPOINTS = [
    "POST /test/bnpl - Test BNPL transaction",
    "POST /test/subscription - Test subscription",
    "POST /test/insurance - Test insurance log",
]


def _failed(e: WebhookError) -> JSONResponse:
    logger.error("Test endpoint write failed: %s", e)
    return JSONResponse(
        status_code=500,
        content=DevEndpointResponse(success=False, error=str(e)).model_dump(exclude_none=True),
    )


@router.post("/bnpl", response_model=DevEndpointResponse, response_model_exclude_none=True)
async def create_test_transaction(
    body: TransactionIn,
    services: AppServices = Depends(get_services),
):
    record = body.to_record()
    try:
        await services.retry.run(
            lambda: services.store.insert(TRANSACTIONS, record),
            name=f"insert {TRANSACTIONS}",
        )
    except WebhookError as e:
        return _failed(e)
    return DevEndpointResponse(success=True, message="Test BNPL transaction created")


@router.post("/subscription", response_model=DevEndpointResponse, response_model_exclude_none=True)
async def create_test_subscription(
    body: SubscriptionIn,
    services: AppServices = Depends(get_services),
):
    record = body.to_record()
    try:
        await services.retry.run(
            lambda: services.store.upsert(SUBSCRIPTIONS, record, "subscription_id"),
            name=f"upsert {SUBSCRIPTIONS}",
        )
    except WebhookError as e:
        return _failed(e)
    return DevEndpointResponse(success=True, message="Test subscription created")


@router.post("/insurance", response_model=DevEndpointResponse, response_model_exclude_none=True)
async def create_test_insurance_log(
    body: InsuranceLogIn,
    services: AppServices = Depends(get_services),
):
    record = body.to_record()
    try:
        await services.retry.run(
            lambda: services.store.insert(INSURANCE_LOGS, record),
            name=f"insert {INSURANCE_LOGS}",
        )
    except WebhookError as e:
        return _failed(e)
    return DevEndpointResponse(success=True, message="Test insurance log created")
