"""Stripe webhook endpoint for ScalingAd Commerce.

The raw body is verified against the Stripe-Signature header before any
processing. Duplicate deliveries are acknowledged without side effects.
"""

from fastapi import APIRouter, Header, Request
from fastapi.concurrency import run_in_threadpool

from scalingad.logging_config import get_logger

from ...database import Webhooks

logger = get_logger("commerce.webhooks")
router = APIRouter(prefix="/webhooks", tags=["commerce", "webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    handler: Webhooks,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    """Receive a Stripe event."""
    payload = await request.body()
    processed = await run_in_threadpool(handler.handle_payload, payload, stripe_signature or "")
    logger.info(f"POST /webhooks/stripe | duplicate={not processed}")
    return {"received": True, "duplicate": not processed}
