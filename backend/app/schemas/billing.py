"""Pydantic v2 request/response schemas for billing endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to start a subscription checkout.

    ``user_id``/``user_email`` are optional echoes of the caller's identity;
    the authenticated user is authoritative and a mismatch is rejected.
    """

    plan_type: str  # "monthly" or "yearly"
    discount_code: str | None = Field(default=None, max_length=255)
    user_id: str | None = None
    user_email: str | None = None


class CouponValidationRequest(BaseModel):
    """Request to validate a discount code before checkout."""

    code: str = Field(max_length=255)


class CheckoutSyncRequest(BaseModel):
    """Request to reconcile a completed checkout session immediately."""

    session_id: str = Field(min_length=1, max_length=255)


class PortalRequest(BaseModel):
    """Request to create a Stripe Customer Portal session."""

    return_url: str | None = None


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    plan_type: str
    display_name: str
    interval: str
    price_cents: int
    savings: str | None = None


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class CheckoutResponse(BaseModel):
    """Where the browser goes next after starting checkout."""

    redirect_url: str
    payment_required: bool
    session_id: str | None = None
    subscription_id: str | None = None
    discount: str | None = None


class CouponValidationResponse(BaseModel):
    """Coupon check result. Invalid codes are a normal 200 answer."""

    valid: bool
    discount: str | None = None
    coupon_id: str | None = None
    is_full_waiver: bool = False
    error: str | None = None


class SubscriptionStatusResponse(BaseModel):
    """The caller's subscription state as the store holds it."""

    has_active_subscription: bool
    status: str
    plan_type: str | None = None
    stripe_subscription_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False


class SubscriptionResolutionResponse(SubscriptionStatusResponse):
    """Outcome of the bounded post-checkout wait."""

    state: Literal["entitled", "not_entitled", "timed_out"]
    attempts: int
    waited_seconds: float
    retry_after_seconds: float | None = None


class PortalResponse(BaseModel):
    """Stripe Customer Portal URL returned to frontend."""

    portal_url: str


class ErrorResponse(BaseModel):
    """Body of every billing error response."""

    error: str
    message: str
    details: dict = Field(default_factory=dict)
    timestamp: datetime
