"""Billing API endpoints — plans, checkout, coupon validation, and subscription status."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.billing.checkout import create_checkout, validate_discount
from app.billing.errors import GatewayUnavailable, InvalidDiscount
from app.billing.plans import list_plans
from app.billing.snapshots import CheckoutSessionSnapshot
from app.billing.status_resolver import (
    ResolutionState,
    RetryPolicy,
    StatusResolver,
    SubscriptionStatus,
)
from app.billing.stripe_client import (
    create_portal_session,
    gateway_errors,
    get_checkout_session,
)
from app.billing.webhooks import (
    fetch_subscription_snapshot,
    resolve_plan_type,
    store_subscription_snapshot,
)
from app.config import settings
from app.models.user import User
from app.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    CheckoutSyncRequest,
    CouponValidationRequest,
    CouponValidationResponse,
    PlanResponse,
    PlansListResponse,
    PortalRequest,
    PortalResponse,
    SubscriptionResolutionResponse,
    SubscriptionStatusResponse,
)
from app.services.subscription_service import get_subscription_for_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])

PAID_SESSION_STATUSES = {"paid", "no_payment_required"}


def _status_response(sub_status: SubscriptionStatus) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        has_active_subscription=sub_status.has_active_subscription,
        status=sub_status.status,
        plan_type=sub_status.plan_type,
        stripe_subscription_id=sub_status.stripe_subscription_id,
        current_period_end=sub_status.current_period_end,
        cancel_at_period_end=sub_status.cancel_at_period_end,
    )


@router.get("/plans", response_model=PlansListResponse)
async def get_plans() -> PlansListResponse:
    """List available plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                plan_type=p.plan_type,
                display_name=p.display_name,
                interval=p.interval,
                price_cents=p.price_cents,
                savings=p.savings,
            )
            for p in list_plans()
        ]
    )


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionStatusResponse:
    """Get the caller's current subscription state (single read)."""
    subscription = await get_subscription_for_user(db, current_user.id)
    return _status_response(SubscriptionStatus.from_record(subscription))


@router.get("/subscription/await", response_model=SubscriptionResolutionResponse)
async def await_subscription_status(
    expect_record: bool = Query(
        True, description="True when returning from checkout: wait for the webhook to land."
    ),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResolutionResponse:
    """Resolve entitlement, waiting a bounded time for a pending checkout webhook."""

    async def fetch() -> SubscriptionStatus:
        # READ COMMITTED: each SELECT sees rows the webhook committed meanwhile.
        return SubscriptionStatus.from_record(await get_subscription_for_user(db, current_user.id))

    policy = RetryPolicy.from_settings()
    resolution = await StatusResolver(fetch, policy).resolve(expect_record=expect_record)

    return SubscriptionResolutionResponse(
        **_status_response(resolution.status).model_dump(),
        state=resolution.state.value,
        attempts=resolution.attempts,
        waited_seconds=resolution.waited_seconds,
        retry_after_seconds=(
            policy.max_delay if resolution.state is ResolutionState.TIMED_OUT else None
        ),
    )


@router.post("/coupons/validate", response_model=CouponValidationResponse)
async def validate_coupon(body: CouponValidationRequest) -> CouponValidationResponse:
    """Check a discount code. Invalid codes return 200 with ``valid: false``."""
    try:
        coupon = await validate_discount(body.code)
    except InvalidDiscount as e:
        return CouponValidationResponse(valid=False, error=e.message)
    except GatewayUnavailable:
        return CouponValidationResponse(valid=False, error="Coupon validation failed")

    return CouponValidationResponse(
        valid=True,
        discount=coupon.display,
        coupon_id=coupon.id,
        is_full_waiver=coupon.is_full_waiver,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def start_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CheckoutResponse:
    """Create a Checkout session, or a subscription directly for full-waiver coupons."""
    if body.user_id is not None and body.user_id != str(current_user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot start checkout for another user.",
        )

    result = await create_checkout(
        db,
        current_user,
        plan_type=body.plan_type,
        discount_code=body.discount_code,
    )
    # The full-waiver path wrote the record; it must be durable before we answer.
    await db.commit()

    return CheckoutResponse(
        redirect_url=result.redirect_url,
        payment_required=result.payment_required,
        session_id=result.session_id,
        subscription_id=result.subscription_id,
        discount=result.discount,
    )


@router.post("/checkout/sync", response_model=SubscriptionStatusResponse)
async def sync_checkout(
    body: CheckoutSyncRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionStatusResponse:
    """Apply a completed checkout now instead of waiting for its webhook."""
    with gateway_errors("checkout session retrieve"):
        try:
            raw_session = await get_checkout_session(body.session_id)
        except stripe.InvalidRequestError as e:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Checkout session not found.",
            ) from e
    session = CheckoutSessionSnapshot.from_stripe(raw_session)

    existing = await get_subscription_for_user(db, current_user.id)
    owns_session = session.metadata.get("user_id") == str(current_user.id) or (
        existing is not None
        and existing.stripe_customer_id is not None
        and existing.stripe_customer_id == session.customer_id
    )
    if not owns_session:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Checkout session does not belong to the current user.",
        )

    if session.payment_status not in PAID_SESSION_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Payment not completed. Status: {session.payment_status}",
        )
    if session.mode != "subscription" or not session.subscription_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Checkout session has no subscription.",
        )

    subscription = await fetch_subscription_snapshot(session.subscription_id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found.",
        )
    record = await store_subscription_snapshot(
        db,
        current_user.id,
        subscription,
        resolve_plan_type(session, subscription),
        customer_id=session.customer_id,
    )
    await db.commit()
    logger.info(
        "Checkout %s synced for user %s: subscription %s is %s",
        session.id,
        current_user.id,
        subscription.id,
        subscription.status,
    )
    return _status_response(SubscriptionStatus.from_record(record))


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    body: PortalRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PortalResponse:
    """Create a Stripe Customer Portal session for subscription management."""
    subscription = await get_subscription_for_user(db, current_user.id)

    if subscription is None or not subscription.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Stripe customer found. Subscribe first.",
        )

    return_url = body.return_url or f"{settings.frontend_url}/settings"

    with gateway_errors("portal session create"):
        session = await create_portal_session(
            customer_id=subscription.stripe_customer_id,
            return_url=return_url,
        )

    return PortalResponse(portal_url=session.url)
