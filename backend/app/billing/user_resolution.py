"""Attribute a completed checkout to the application user who owns it.

Stripe is the only channel carrying our user id through checkout, and any
single copy of it may be missing (sessions created by hand in the
dashboard, promotion flows, older app versions). The fallback chain is:

1. ``user_id`` in the checkout session metadata
2. ``user_id`` in the subscription metadata
3. an application user whose email matches the billing email
4. an existing subscription row for the same Stripe customer

Later lifecycle events key off the stored Stripe subscription id, so this
chain only runs for ``checkout.session.completed`` (and the checkout sync
endpoint).
"""

import logging
import uuid
from dataclasses import dataclass

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import UserResolutionFailed
from app.billing.snapshots import CheckoutSessionSnapshot, SubscriptionSnapshot, get_field
from app.billing.stripe_client import gateway_errors, retrieve_customer
from app.services.subscription_service import get_subscription_by_stripe_customer
from app.services.user_service import get_user_by_email, get_user_by_id

logger = logging.getLogger(__name__)

SOURCE_SESSION_METADATA = "session_metadata"
SOURCE_SUBSCRIPTION_METADATA = "subscription_metadata"
SOURCE_BILLING_EMAIL = "billing_email"
SOURCE_CUSTOMER_RECORD = "customer_record"


@dataclass(frozen=True)
class ResolvedOwner:
    user_id: uuid.UUID
    source: str


async def _billing_email(session: CheckoutSessionSnapshot) -> str | None:
    if session.customer_email:
        return session.customer_email
    if not session.customer_id:
        return None
    with gateway_errors("customer retrieve"):
        try:
            customer = await retrieve_customer(session.customer_id)
        except stripe.InvalidRequestError as e:
            # Stripe answered: no such customer. The chain moves on.
            logger.warning(
                "Stripe customer %s not retrievable for checkout %s: %s",
                session.customer_id,
                session.id,
                e,
            )
            return None
    if get_field(customer, "deleted"):
        return None
    return get_field(customer, "email")


async def resolve_owning_user(
    db: AsyncSession,
    session: CheckoutSessionSnapshot,
    subscription: SubscriptionSnapshot,
) -> ResolvedOwner:
    """Walk the fallback chain and return the first user that exists.

    Raises:
        UserResolutionFailed: Every step came up empty.
        GatewayUnavailable: Stripe could not be asked for the billing email.
            A customer Stripe no longer knows just skips that step.
    """
    tried: dict[str, str | None] = {}

    for source, metadata in (
        (SOURCE_SESSION_METADATA, session.metadata),
        (SOURCE_SUBSCRIPTION_METADATA, subscription.metadata),
    ):
        candidate = metadata.get("user_id")
        tried[source] = candidate
        if candidate:
            user = await get_user_by_id(db, candidate)
            if user is not None:
                return ResolvedOwner(user.id, source)
            logger.warning(
                "Checkout %s carries unknown user_id %r in %s", session.id, candidate, source
            )

    email = await _billing_email(session)
    tried[SOURCE_BILLING_EMAIL] = email
    if email:
        user = await get_user_by_email(db, email)
        if user is not None:
            logger.info("Checkout %s attributed to user %s by billing email", session.id, user.id)
            return ResolvedOwner(user.id, SOURCE_BILLING_EMAIL)

    customer_id = session.customer_id or subscription.customer_id
    tried[SOURCE_CUSTOMER_RECORD] = customer_id
    if customer_id:
        existing = await get_subscription_by_stripe_customer(db, customer_id)
        if existing is not None:
            logger.info(
                "Checkout %s attributed to user %s by Stripe customer %s",
                session.id,
                existing.user_id,
                customer_id,
            )
            return ResolvedOwner(existing.user_id, SOURCE_CUSTOMER_RECORD)

    raise UserResolutionFailed(
        f"No application user for checkout session {session.id}",
        details={"session_id": session.id, "tried": tried},
    )
