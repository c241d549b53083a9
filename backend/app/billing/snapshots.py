"""Typed snapshots of Stripe payload objects.

Stripe objects are loosely typed dict/attribute hybrids whose shape shifts
between API versions. Everything downstream works on these frozen
dataclasses instead.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Stripe subscription status -> local status vocabulary.
_GATEWAY_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "incomplete_expired": "expired",
    "paused": "expired",
}


def map_gateway_status(gateway_status: str | None) -> str:
    """Map a Stripe status onto the local vocabulary.

    Unknown values map to past_due, which never grants access.
    """
    return _GATEWAY_STATUS_MAP.get(gateway_status or "", "past_due")


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def get_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object, a plain dict, or a namespace."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def metadata_of(obj: Any) -> dict[str, str]:
    """Return an object's metadata as a plain dict (empty if absent)."""
    raw = get_field(obj, "metadata") or {}
    return {str(k): str(v) for k, v in dict(raw).items() if v is not None}


def _get_first_item(stripe_sub: Any) -> Any:
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    try:
        sub_items = stripe_sub["items"]
    except (KeyError, TypeError, AttributeError):
        return None
    data = get_field(sub_items, "data") if sub_items else None
    if data:
        return data[0]
    return None


def _expand_id(value: Any) -> str | None:
    """Stripe references are ids, or full objects when expanded."""
    if value is None or isinstance(value, str):
        return value
    return get_field(value, "id")


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The fields of a Stripe subscription the store cares about."""

    id: str
    customer_id: str | None
    gateway_status: str
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    price_id: str | None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, stripe_sub: Any) -> "SubscriptionSnapshot":
        item = _get_first_item(stripe_sub)
        price = get_field(item, "price")

        # In Stripe API 2025-08-27 (basil), current_period_start/end moved
        # from the subscription object to the subscription item.
        start = get_field(item, "current_period_start")
        end = get_field(item, "current_period_end")
        if start is None:
            start = get_field(stripe_sub, "current_period_start")
        if end is None:
            end = get_field(stripe_sub, "current_period_end")

        gateway_status = get_field(stripe_sub, "status") or ""
        return cls(
            id=get_field(stripe_sub, "id"),
            customer_id=_expand_id(get_field(stripe_sub, "customer")),
            gateway_status=gateway_status,
            status=map_gateway_status(gateway_status),
            current_period_start=ts_to_naive(start),
            current_period_end=ts_to_naive(end),
            cancel_at_period_end=bool(get_field(stripe_sub, "cancel_at_period_end")),
            price_id=get_field(price, "id") if price is not None else None,
            metadata=metadata_of(stripe_sub),
        )


@dataclass(frozen=True)
class CheckoutSessionSnapshot:
    """The fields of a Checkout Session needed to attribute and apply it."""

    id: str
    mode: str | None
    payment_status: str | None
    customer_id: str | None
    subscription_id: str | None
    customer_email: str | None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, session: Any) -> "CheckoutSessionSnapshot":
        details = get_field(session, "customer_details")
        email = get_field(details, "email") or get_field(session, "customer_email")
        return cls(
            id=get_field(session, "id"),
            mode=get_field(session, "mode"),
            payment_status=get_field(session, "payment_status"),
            customer_id=_expand_id(get_field(session, "customer")),
            subscription_id=_expand_id(get_field(session, "subscription")),
            customer_email=email,
            metadata=metadata_of(session),
        )


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: str
    subscription_id: str | None
    customer_id: str | None
    customer_email: str | None

    @classmethod
    def from_stripe(cls, invoice: Any) -> "InvoiceSnapshot":
        subscription_id = _expand_id(get_field(invoice, "subscription"))
        if subscription_id is None:
            # Newer API versions nest the link under parent.subscription_details.
            parent = get_field(invoice, "parent")
            details = get_field(parent, "subscription_details")
            subscription_id = _expand_id(get_field(details, "subscription"))
        return cls(
            id=get_field(invoice, "id"),
            subscription_id=subscription_id,
            customer_id=_expand_id(get_field(invoice, "customer")),
            customer_email=get_field(invoice, "customer_email"),
        )


@dataclass(frozen=True)
class CouponSnapshot:
    id: str
    percent_off: float | None
    amount_off: int | None
    currency: str | None
    valid: bool

    @classmethod
    def from_stripe(cls, coupon: Any) -> "CouponSnapshot":
        valid = get_field(coupon, "valid")
        return cls(
            id=get_field(coupon, "id"),
            percent_off=get_field(coupon, "percent_off"),
            amount_off=get_field(coupon, "amount_off"),
            currency=get_field(coupon, "currency"),
            valid=True if valid is None else bool(valid),
        )

    @property
    def is_full_waiver(self) -> bool:
        return self.percent_off is not None and float(self.percent_off) == 100.0

    @property
    def display(self) -> str:
        """Human-readable discount, e.g. "50%" or "$5.00"."""
        if self.percent_off:
            pct = float(self.percent_off)
            return f"{int(pct)}%" if pct.is_integer() else f"{pct}%"
        return f"${(self.amount_off or 0) / 100:.2f}"
