"""Stripe webhook endpoint — receives and processes Stripe events."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import GatewayUnavailable, SignatureVerificationFailed, StoreWriteFailed
from app.billing.stripe_client import construct_webhook_event
from app.billing.webhooks import process_event
from app.database import get_db
from app.services.notification_service import discard_queued, send_queued

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, str]:
    """Receive and process Stripe webhook events.

    200 means processed or deliberately skipped; 400 means the request was
    not verifiably from Stripe; 500 asks Stripe to redeliver.
    """
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        logger.warning("Webhook rejected: missing Stripe-Signature header")
        raise SignatureVerificationFailed("Missing signature")

    # 2. Verify signature
    try:
        event = construct_webhook_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise SignatureVerificationFailed("Invalid signature", original_error=e) from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise SignatureVerificationFailed("Invalid payload", original_error=e) from e

    # 3. Dispatch to handler; transient failures make Stripe retry
    try:
        outcome = await process_event(db, event)
        await db.commit()
    except (StoreWriteFailed, GatewayUnavailable) as e:
        await db.rollback()
        discard_queued(db)
        logger.error("Webhook event %s failed, asking for redelivery: %s", event.id, e.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e
    except SQLAlchemyError as e:
        await db.rollback()
        discard_queued(db)
        logger.error("Webhook event %s could not be committed: %s", event.id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    # 4. Emails only for state that is actually stored
    send_queued(db)
    return {"status": outcome}
