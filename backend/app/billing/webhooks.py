"""Stripe webhook event handlers — process subscription lifecycle events.

Every handler overwrites fields from the event's own state instead of
incrementing anything, so redelivery is idempotent. Each returns a short
outcome string that the endpoint echoes back to Stripe.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import UserResolutionFailed
from app.billing.events import (
    BillingEvent,
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    parse_event,
)
from app.billing.plans import DEFAULT_PLAN_TYPE, VALID_PLAN_TYPES, get_plan_type_by_price_id
from app.billing.snapshots import CheckoutSessionSnapshot, SubscriptionSnapshot
from app.billing.stripe_client import gateway_errors, get_subscription
from app.billing.user_resolution import resolve_owning_user
from app.config import settings
from app.models.subscription import Subscription
from app.services.anomaly_service import record_anomaly
from app.services.notification_service import (
    PAYMENT_FAILED,
    SUBSCRIPTION_SUCCESS,
    notify_after_commit,
)
from app.services.subscription_service import (
    get_subscription_by_stripe_subscription,
    get_subscription_for_user,
    update_subscription_from_stripe,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"
SKIPPED = "skipped"
UNRESOLVED = "unresolved"


def resolve_plan_type(
    session: CheckoutSessionSnapshot | None, subscription: SubscriptionSnapshot
) -> str:
    """Plan type from metadata (session, then subscription), then the price."""
    candidates = [
        session.metadata.get("plan_type") if session else None,
        subscription.metadata.get("plan_type"),
        get_plan_type_by_price_id(subscription.price_id),
    ]
    for candidate in candidates:
        if candidate in VALID_PLAN_TYPES:
            return candidate
    logger.warning(
        "No plan type for subscription %s (price %s), defaulting to %s",
        subscription.id,
        subscription.price_id,
        DEFAULT_PLAN_TYPE,
    )
    return DEFAULT_PLAN_TYPE


async def store_subscription_snapshot(
    db: AsyncSession,
    user_id: uuid.UUID,
    subscription: SubscriptionSnapshot,
    plan_type: str,
    customer_id: str | None = None,
) -> Subscription:
    """Upsert the user's row from a gateway subscription."""
    return await upsert_subscription(
        db,
        user_id=user_id,
        stripe_customer_id=customer_id or subscription.customer_id,
        stripe_subscription_id=subscription.id,
        plan_type=plan_type,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )


async def fetch_subscription_snapshot(subscription_id: str) -> SubscriptionSnapshot | None:
    """Fetch a subscription from Stripe, or None if Stripe has no such subscription.

    Raises:
        GatewayUnavailable: Stripe did not answer.
    """
    with gateway_errors("subscription retrieve"):
        try:
            stripe_sub = await get_subscription(subscription_id)
        except stripe.InvalidRequestError as e:
            logger.warning("Stripe subscription %s not retrievable: %s", subscription_id, e)
            return None
    return SubscriptionSnapshot.from_stripe(stripe_sub)


async def handle_checkout_session_completed(
    db: AsyncSession, event: CheckoutSessionCompleted
) -> str:
    """Handle checkout.session.completed — attribute and store the new subscription."""
    session = event.session
    if session.mode != "subscription" or not session.subscription_id:
        logger.info("Checkout session %s is not a subscription checkout, skipping", session.id)
        return SKIPPED

    # The event only carries the subscription id; fetch status and periods.
    subscription = await fetch_subscription_snapshot(session.subscription_id)
    if subscription is None:
        await record_anomaly(
            db,
            event_id=event.event_id,
            event_type=event.event_type,
            reason=f"Stripe has no subscription {session.subscription_id}",
            stripe_customer_id=session.customer_id,
            stripe_subscription_id=session.subscription_id,
            details={"session_id": session.id},
        )
        return UNRESOLVED

    try:
        owner = await resolve_owning_user(db, session, subscription)
    except UserResolutionFailed as e:
        await record_anomaly(
            db,
            event_id=event.event_id,
            event_type=event.event_type,
            reason=e.message,
            stripe_customer_id=session.customer_id,
            stripe_subscription_id=subscription.id,
            details=e.details,
        )
        return UNRESOLVED

    plan_type = resolve_plan_type(session, subscription)
    previous = await get_subscription_for_user(db, owner.user_id)
    already_stored = previous is not None and previous.stripe_subscription_id == subscription.id
    await store_subscription_snapshot(
        db, owner.user_id, subscription, plan_type, customer_id=session.customer_id
    )
    logger.info(
        "Checkout completed: subscription %s stored for user %s (via %s), plan=%s, status=%s",
        subscription.id,
        owner.user_id,
        owner.source,
        plan_type,
        subscription.status,
    )

    # Redeliveries rewrite the row but don't email again.
    if not already_stored:
        notify_after_commit(
            db, SUBSCRIPTION_SUCCESS, session.customer_email, {"plan_type": plan_type}
        )
    return PROCESSED


async def handle_subscription_updated(db: AsyncSession, event: SubscriptionUpdated) -> str:
    """Handle customer.subscription.updated — sync status, period, and plan."""
    subscription = event.subscription
    fields: dict[str, Any] = {
        "status": subscription.status,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }
    plan_type = get_plan_type_by_price_id(subscription.price_id)
    if plan_type:
        fields["plan_type"] = plan_type

    updated = await update_subscription_from_stripe(db, subscription.id, **fields)
    if updated is None:
        logger.warning("No local subscription found for Stripe subscription %s (update)", subscription.id)
        return SKIPPED
    return PROCESSED


async def handle_subscription_deleted(db: AsyncSession, event: SubscriptionDeleted) -> str:
    """Handle customer.subscription.deleted — retire the subscription."""
    subscription_id = event.subscription.id
    updated = await update_subscription_from_stripe(
        db, subscription_id, keep_terminal=False, status="cancelled"
    )
    if updated is None:
        logger.warning("No local subscription found for Stripe subscription %s (delete)", subscription_id)
        return SKIPPED
    logger.info("Subscription deleted: %s marked as cancelled", subscription_id)
    return PROCESSED


async def handle_invoice_payment_succeeded(
    db: AsyncSession, event: InvoicePaymentSucceeded
) -> str:
    """Handle invoice.payment_succeeded — confirm active status."""
    invoice = event.invoice
    if not invoice.subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping", invoice.id)
        return SKIPPED

    updated = await update_subscription_from_stripe(db, invoice.subscription_id, status="active")
    if updated is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (invoice %s)",
            invoice.subscription_id,
            invoice.id,
        )
        return SKIPPED
    return PROCESSED


async def handle_invoice_payment_failed(db: AsyncSession, event: InvoicePaymentFailed) -> str:
    """Handle invoice.payment_failed — mark subscription as past_due."""
    invoice = event.invoice
    if not invoice.subscription_id:
        logger.info("Invoice %s has no subscription (one-time), skipping payment failure", invoice.id)
        return SKIPPED

    previous = await get_subscription_by_stripe_subscription(db, invoice.subscription_id)
    previous_status = previous.status if previous is not None else None

    updated = await update_subscription_from_stripe(db, invoice.subscription_id, status="past_due")
    if updated is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (payment failed)",
            invoice.subscription_id,
        )
        return SKIPPED

    if updated.status == "past_due" and previous_status != "past_due":
        notify_after_commit(
            db,
            PAYMENT_FAILED,
            invoice.customer_email,
            {"retry_url": f"{settings.frontend_url}/settings"},
        )
    return PROCESSED


EVENT_HANDLERS: dict[type[BillingEvent], Callable[[AsyncSession, Any], Awaitable[str]]] = {
    CheckoutSessionCompleted: handle_checkout_session_completed,
    SubscriptionUpdated: handle_subscription_updated,
    SubscriptionDeleted: handle_subscription_deleted,
    InvoicePaymentSucceeded: handle_invoice_payment_succeeded,
    InvoicePaymentFailed: handle_invoice_payment_failed,
}


async def process_event(db: AsyncSession, raw_event: Any) -> str:
    """Parse a verified Stripe event and route it to its handler.

    Unknown event types are acknowledged without touching the store.
    """
    event = parse_event(raw_event)
    handler = EVENT_HANDLERS.get(type(event))
    if handler is None:
        logger.debug("Unhandled webhook event type: %s", event.event_type)
        return IGNORED

    logger.info("Processing webhook event: %s (id=%s)", event.event_type, event.event_id)
    return await handler(db, event)
