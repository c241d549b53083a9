"""Typed webhook events — one dataclass per event kind we act on."""

from dataclasses import dataclass
from typing import Any

from app.billing.snapshots import (
    CheckoutSessionSnapshot,
    InvoiceSnapshot,
    SubscriptionSnapshot,
    get_field,
)


@dataclass(frozen=True)
class BillingEvent:
    """Base for all parsed webhook events."""

    event_id: str
    event_type: str


@dataclass(frozen=True)
class CheckoutSessionCompleted(BillingEvent):
    session: CheckoutSessionSnapshot


@dataclass(frozen=True)
class SubscriptionUpdated(BillingEvent):
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted(BillingEvent):
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class InvoicePaymentSucceeded(BillingEvent):
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class InvoicePaymentFailed(BillingEvent):
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class UnhandledEvent(BillingEvent):
    """Any event type we don't act on; acknowledged without mutation."""


def parse_event(event: Any) -> BillingEvent:
    """Turn a verified Stripe event into its typed variant."""
    event_id = get_field(event, "id") or ""
    event_type = get_field(event, "type") or ""
    obj = get_field(get_field(event, "data"), "object")

    if event_type == "checkout.session.completed":
        return CheckoutSessionCompleted(
            event_id, event_type, CheckoutSessionSnapshot.from_stripe(obj)
        )
    if event_type == "customer.subscription.updated":
        return SubscriptionUpdated(event_id, event_type, SubscriptionSnapshot.from_stripe(obj))
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(event_id, event_type, SubscriptionSnapshot.from_stripe(obj))
    if event_type == "invoice.payment_succeeded":
        return InvoicePaymentSucceeded(event_id, event_type, InvoiceSnapshot.from_stripe(obj))
    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(event_id, event_type, InvoiceSnapshot.from_stripe(obj))
    return UnhandledEvent(event_id, event_type)
