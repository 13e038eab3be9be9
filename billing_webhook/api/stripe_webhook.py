from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from billing_webhook.api.deps import AppServices, get_services
from billing_webhook.core.errors import EventValidationError, ProcessingError, VerificationError
from billing_webhook.core.logging import get_logger
from billing_webhook.core.stripe_config import SIGNATURE_HEADER
from billing_webhook.models.common import ErrorResponse, WebhookAck

logger = get_logger(__name__)

router = APIRouter()


def _status_for(message: str) -> int:
    """
    Bad input is not going to get better on redelivery: 400. Everything
    else is 500 so Stripe retries.
    """
    m = message.lower()
    return 400 if "validation" in m or "invalid" in m else 500


@router.post(
    "/webhook",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def stripe_webhook(
    request: Request,
    services: AppServices = Depends(get_services),
):
    # Signature is computed over the exact bytes: never parse before verifying
    payload = await request.body()
    sig_header = request.headers.get(SIGNATURE_HEADER)

    try:
        event = services.verifier.verify(payload, sig_header)
    except VerificationError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="Webhook signature verification failed",
                message=str(e),
            ).model_dump(exclude_none=True),
        )
    except EventValidationError as e:
        logger.warning("Rejected webhook payload: %s", e)
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="Invalid webhook payload",
                message=str(e),
            ).model_dump(exclude_none=True),
        )

    logger.info("Received event: %s - ID: %s", event.type, event.id)

    try:
        await services.dispatcher.dispatch(event)
    except ProcessingError as e:
        return JSONResponse(
            status_code=_status_for(e.message),
            content=ErrorResponse(
                error="Webhook processing failed",
                message=e.message,
                event=e.event_type,
                id=e.event_id,
            ).model_dump(),
        )

    return WebhookAck(
        event=event.type,
        id=event.id,
        timestamp=datetime.now(timezone.utc),
    )
