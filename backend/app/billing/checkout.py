"""Checkout orchestration — customer resolution, discounts, and the two checkout paths.

Nothing here retries: a failed gateway call surfaces as a typed error and
the client repeats the whole operation.
"""

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import CustomerResolutionFailed, GatewayUnavailable, InvalidDiscount
from app.billing.plans import get_price_id
from app.billing.snapshots import CouponSnapshot, SubscriptionSnapshot, get_field
from app.billing.stripe_client import (
    TRANSIENT_STRIPE_ERRORS,
    create_checkout_session,
    create_customer,
    create_subscription,
    gateway_errors,
    retrieve_coupon,
    retrieve_customer,
)
from app.billing.webhooks import store_subscription_snapshot
from app.config import settings
from app.models.user import User
from app.services.subscription_service import get_subscription_for_user

logger = logging.getLogger(__name__)

CHECKOUT_SOURCE = "askstan_app"


@dataclass(frozen=True)
class CheckoutResult:
    """Where to send the user next, and whether they still have to pay."""

    redirect_url: str
    payment_required: bool
    session_id: str | None = None
    subscription_id: str | None = None
    discount: str | None = None


async def resolve_customer(db: AsyncSession, user: User) -> str:
    """Return a usable Stripe customer id for the user, creating one if needed.

    A stored customer that can't be retrieved (deleted upstream, wrong
    account) is replaced rather than failing the checkout.

    Raises:
        GatewayUnavailable: Stripe did not answer.
        CustomerResolutionFailed: Stripe refused to create the customer.
    """
    existing = await get_subscription_for_user(db, user.id)
    if existing is not None and existing.stripe_customer_id:
        try:
            customer = await retrieve_customer(existing.stripe_customer_id)
        except TRANSIENT_STRIPE_ERRORS as e:
            raise GatewayUnavailable("customer retrieve", original_error=e) from e
        except stripe.StripeError as e:
            logger.warning(
                "Stored Stripe customer %s for user %s not retrievable (%s), creating a new one",
                existing.stripe_customer_id,
                user.id,
                e,
            )
        else:
            if not get_field(customer, "deleted"):
                return customer.id
            logger.warning(
                "Stored Stripe customer %s for user %s was deleted, creating a new one",
                existing.stripe_customer_id,
                user.id,
            )

    try:
        customer = await create_customer(email=user.email, user_id=str(user.id))
    except TRANSIENT_STRIPE_ERRORS as e:
        raise GatewayUnavailable("customer create", original_error=e) from e
    except stripe.StripeError as e:
        logger.error("Could not create Stripe customer for user %s: %s", user.id, e)
        raise CustomerResolutionFailed(
            "Could not create a billing customer",
            details={"user_id": str(user.id)},
            original_error=e,
        ) from e
    return customer.id


async def validate_discount(code: str) -> CouponSnapshot:
    """Retrieve and validate a coupon code against Stripe.

    Raises:
        InvalidDiscount: Unknown code, or a coupon that can't be redeemed anymore.
        GatewayUnavailable: Stripe could not be reached.
    """
    code = code.strip()
    if not code:
        raise InvalidDiscount(code, "Coupon code is required")

    try:
        coupon = await retrieve_coupon(code)
    except stripe.InvalidRequestError as e:
        logger.info("Coupon %r rejected by Stripe: %s", code, e)
        raise InvalidDiscount(code, original_error=e) from e
    except TRANSIENT_STRIPE_ERRORS as e:
        raise GatewayUnavailable("coupon retrieve", original_error=e) from e
    except stripe.StripeError as e:
        raise InvalidDiscount(code, "Coupon validation failed", original_error=e) from e

    snapshot = CouponSnapshot.from_stripe(coupon)
    if not snapshot.valid:
        raise InvalidDiscount(code, "Coupon is no longer valid")
    logger.info("Coupon %s valid: %s off (full waiver: %s)", snapshot.id, snapshot.display, snapshot.is_full_waiver)
    return snapshot


def _app_url(path: str, **params: str) -> str:
    url = f"{settings.frontend_url}{path}"
    return f"{url}?{urlencode(params)}" if params else url


async def create_checkout(
    db: AsyncSession,
    user: User,
    plan_type: str,
    discount_code: str | None = None,
) -> CheckoutResult:
    """Start a subscription purchase for the user.

    A full-waiver coupon creates the Stripe subscription immediately and
    writes the local record before returning. Anything else creates a
    Checkout Session and leaves the local record to the webhook.
    """
    price_id = get_price_id(plan_type)
    customer_id = await resolve_customer(db, user)

    coupon = await validate_discount(discount_code) if discount_code else None
    user_id = str(user.id)

    if coupon is not None and coupon.is_full_waiver:
        with gateway_errors("subscription create"):
            stripe_sub = await create_subscription(
                customer_id=customer_id,
                price_id=price_id,
                coupon_id=coupon.id,
                metadata={
                    "user_id": user_id,
                    "plan_type": plan_type,
                    "coupon_applied": coupon.id,
                },
            )
        snapshot = SubscriptionSnapshot.from_stripe(stripe_sub)
        await store_subscription_snapshot(db, user.id, snapshot, plan_type, customer_id=customer_id)
        logger.info(
            "Full-waiver checkout for user %s: subscription %s created directly (status=%s)",
            user.id,
            snapshot.id,
            snapshot.status,
        )
        return CheckoutResult(
            redirect_url=_app_url("/dashboard", coupon_success="true", plan=plan_type),
            payment_required=False,
            subscription_id=snapshot.id,
            discount=coupon.display,
        )

    coupon_code = coupon.id if coupon else ""
    # {CHECKOUT_SESSION_ID} is substituted by Stripe and must stay unescaped.
    success_url = (
        f"{settings.frontend_url}/checkout-success?session_id={{CHECKOUT_SESSION_ID}}&"
        + urlencode({"plan": plan_type, "coupon": coupon_code})
    )
    with gateway_errors("checkout session create"):
        session = await create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=_app_url("/plans"),
            metadata={
                "user_id": user_id,
                "plan_type": plan_type,
                "coupon_code": coupon_code,
                "source": CHECKOUT_SOURCE,
            },
            subscription_metadata={
                "user_id": user_id,
                "plan_type": plan_type,
                "coupon_applied": coupon_code or "none",
            },
            coupon_id=coupon.id if coupon else None,
        )
    logger.info("Checkout session %s created for user %s (plan=%s)", session.id, user.id, plan_type)
    return CheckoutResult(
        redirect_url=session.url,
        payment_required=True,
        session_id=session.id,
        discount=coupon.display if coupon else None,
    )
