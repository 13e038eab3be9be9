"""
Health check endpoint for monitoring application status
"""
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from billing_webhook.api.deps import AppServices, get_services
from billing_webhook.core.errors import StoreError
from billing_webhook.core.logging import get_logger
from billing_webhook.models.common import HealthResponse

logger = get_logger(__name__)

SERVICE_NAME = "nft-admin-webhook"
SERVICE_VERSION = "2.0.0"

router = APIRouter(prefix="/health")


@router.get("", response_model=HealthResponse, response_model_exclude_none=True)
async def health_check(services: AppServices = Depends(get_services)):
    """
    Health check endpoint; performs a one-row read against the database
    """
    status, database, error = "healthy", "connected", None
    try:
        await services.store.ping()
    except StoreError as e:
        logger.warning("Health check could not reach the database: %s", e)
        status, database, error = "unhealthy", "disconnected", str(e)

    return HealthResponse(
        status=status,
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        environment=services.settings.ENVIRONMENT,
        database=database,
        stripe="configured" if services.settings.STRIPE_WEBHOOK_SECRET else "not_configured",
        timestamp=datetime.now(timezone.utc),
        uptime=round(time.monotonic() - services.started_at, 3),
        error=error,
    )
