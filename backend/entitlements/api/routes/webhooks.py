"""Stripe webhook endpoint.

Status codes drive Stripe's redelivery: 2xx acks (including duplicates and
ignored event types), 400 rejects a delivery that can never succeed, and 5xx
asks Stripe to retry later.
"""

import structlog
from fastapi import APIRouter, HTTPException, Request

from entitlements.billing.processor import WebhookProcessor
from entitlements.core.config import get_settings
from entitlements.core.exceptions import (
    EventProcessingError,
    InvalidSignature,
    MalformedPayload,
    MissingSecret,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """Handle Stripe webhook events with signature verification."""
    if not get_settings().stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")

    body = await request.body()
    sig_header = request.headers.get("stripe-signature")
    processor: WebhookProcessor = request.app.state.processor

    try:
        result = await processor.handle(body, sig_header)
    except MissingSecret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(status_code=503, detail="Stripe webhook endpoint is not configured")
    except InvalidSignature as exc:
        logger.warning("stripe_webhook_invalid_signature", reason=str(exc))
        raise HTTPException(status_code=400, detail="Invalid signature")
    except MalformedPayload as exc:
        logger.warning("stripe_webhook_invalid_payload", reason=str(exc))
        raise HTTPException(status_code=400, detail="Invalid payload")
    except EventProcessingError as exc:
        raise HTTPException(status_code=500, detail=f"Failed to process {exc.event_type}") from exc

    if result.duplicate:
        return {"status": "ok", "duplicate": True}
    return {"status": "ok"}
