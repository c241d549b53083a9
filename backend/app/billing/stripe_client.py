"""Async Stripe API wrapper — the only module that talks to the SDK."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import stripe
from stripe import StripeClient

from app.billing.errors import GatewayUnavailable
from app.config import settings

logger = logging.getLogger(__name__)

# Errors that mean "Stripe did not answer", as opposed to "Stripe said no".
TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def get_stripe_client() -> StripeClient:
    """Create a StripeClient with async HTTP and an explicit per-call timeout.

    SDK-level retries are disabled: checkout retries belong to the caller and
    webhook retries to Stripe's redelivery.
    """
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=0,
    )


@contextmanager
def gateway_errors(operation: str) -> Iterator[None]:
    """Translate any Stripe failure inside the block into GatewayUnavailable."""
    try:
        yield
    except stripe.StripeError as e:
        logger.error("Stripe %s failed: %s", operation, e)
        raise GatewayUnavailable(operation, original_error=e) from e


async def retrieve_customer(customer_id: str) -> stripe.Customer:
    """Retrieve a Stripe customer. Deleted customers come back with ``deleted=True``."""
    client = get_stripe_client()
    return await client.v1.customers.retrieve_async(customer_id)


async def create_customer(email: str, user_id: str) -> stripe.Customer:
    """Create a Stripe customer linked to an application user."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
    customer = await client.v1.customers.create_async(
        params={
            "email": email,
            "metadata": {"app_user_id": user_id, "created_from": "askstan_app"},
        }
    )
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


async def retrieve_coupon(code: str) -> stripe.Coupon:
    """Retrieve a coupon by its id (the code users type in)."""
    client = get_stripe_client()
    return await client.v1.coupons.retrieve_async(code)


async def create_checkout_session(
    customer_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
    subscription_metadata: dict[str, str],
    coupon_id: str | None = None,
) -> stripe.checkout.Session:
    """Create a subscription-mode Checkout Session.

    Application identifiers ride in both session and subscription metadata;
    webhook handling reads whichever survives.
    """
    client = get_stripe_client()
    params: dict = {
        "mode": "subscription",
        "customer": customer_id,
        "line_items": [{"price": price_id, "quantity": 1}],
        "payment_method_types": ["card"],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "subscription_data": {"metadata": subscription_metadata},
    }
    # Stripe rejects discounts combined with allow_promotion_codes.
    if coupon_id:
        params["discounts"] = [{"coupon": coupon_id}]
    else:
        params["allow_promotion_codes"] = True

    logger.info(
        "Creating checkout session for customer %s, price %s, coupon %s",
        customer_id,
        price_id,
        coupon_id or "none",
    )
    return await client.v1.checkout.sessions.create_async(params=params)


async def get_checkout_session(session_id: str) -> stripe.checkout.Session:
    """Retrieve a Checkout Session by ID."""
    client = get_stripe_client()
    return await client.v1.checkout.sessions.retrieve_async(session_id)


async def create_subscription(
    customer_id: str,
    price_id: str,
    coupon_id: str,
    metadata: dict[str, str],
) -> stripe.Subscription:
    """Create a subscription directly, bypassing Checkout (full-waiver coupons)."""
    client = get_stripe_client()
    logger.info(
        "Creating direct subscription for customer %s, price %s, coupon %s",
        customer_id,
        price_id,
        coupon_id,
    )
    return await client.v1.subscriptions.create_async(
        params={
            "customer": customer_id,
            "items": [{"price": price_id}],
            "discounts": [{"coupon": coupon_id}],
            "metadata": metadata,
        }
    )


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await client.v1.subscriptions.retrieve_async(subscription_id)


async def create_portal_session(
    customer_id: str, return_url: str
) -> stripe.billing_portal.Session:
    """Create a Stripe Customer Portal session for subscription management."""
    client = get_stripe_client()
    logger.info("Creating portal session for customer %s", customer_id)
    return await client.v1.billing_portal.sessions.create_async(
        params={
            "customer": customer_id,
            "return_url": return_url,
        }
    )


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous, no network)."""
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)
