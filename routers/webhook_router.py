"""
Webhook Router - signed Stripe events
"""

import logging
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
import stripe

from database import get_db
from services.payment_service import PaymentService, get_payment_service
from services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _rejected(message: str, error: str = None) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"ok": False, "data": {}, "error": error or message, "message": message},
    )


@webhook_router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """
    Handle Stripe webhook events with signature verification.

    Nothing is processed unless the Stripe-Signature header verifies against
    the webhook secret. Bad signatures and processing failures answer 400 so
    Stripe redelivers; a redelivered event that already went through is
    skipped by the reconciler.
    """
    stripe_signature = request.headers.get("stripe-signature")
    if not stripe_signature:
        logger.error("Missing Stripe-Signature header")
        return _rejected("Missing stripe signature")

    # Raw body is required for signature verification
    payload = await request.body()

    try:
        event = payment_service.construct_event(payload, stripe_signature)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        return _rejected("Invalid webhook signature")
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        return _rejected("Invalid webhook payload", str(e))

    try:
        processed = await WebhookReconciler(db).process_event(event)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Stripe webhook error for {event.get('type')} ({event.get('id')}): {e}", exc_info=True)
        return _rejected("Webhook processing failed", str(e))

    logger.info(f"Stripe webhook processed: {event.get('type')} - {event.get('id')}")
    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "data": {
                "received": True,
                "duplicate": not processed,
                "eventType": event.get("type"),
            },
            "error": None,
            "message": "Webhook processed successfully",
        },
    )
