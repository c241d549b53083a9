"""Subscription service — the persisted subscription store.

One row per user. Writes go through a native ``INSERT ... ON CONFLICT``
upsert or a single guarded ``UPDATE`` so concurrent webhook deliveries rely
on the database's row-level atomicity, never on application locks.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import StoreWriteFailed
from app.models.subscription import TERMINAL_STATUSES, Subscription

logger = logging.getLogger(__name__)

_UPSERT_COLUMNS = (
    "stripe_customer_id",
    "stripe_subscription_id",
    "plan_type",
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
)


def _insert_for(db: AsyncSession):
    """Pick the dialect-specific insert construct that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise StoreWriteFailed(
        f"Upsert not supported on dialect '{dialect}'",
        details={"dialect": dialect},
    )


async def get_subscription_for_user(
    db: AsyncSession, user_id: uuid.UUID
) -> Subscription | None:
    """Fetch the user's subscription, always re-reading the row from the DB."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_customer(
    db: AsyncSession, stripe_customer_id: str
) -> Subscription | None:
    """Look up the most recently touched subscription for a Stripe customer."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_customer_id == stripe_customer_id)
        .order_by(Subscription.updated_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_subscription_by_stripe_subscription(
    db: AsyncSession, stripe_subscription_id: str
) -> Subscription | None:
    """Look up subscription by Stripe subscription ID (used by webhooks)."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    stripe_customer_id: str | None,
    stripe_subscription_id: str | None,
    plan_type: str,
    status: str,
    current_period_start: datetime | None = None,
    current_period_end: datetime | None = None,
    cancel_at_period_end: bool = False,
) -> Subscription:
    """Insert or overwrite the user's subscription row in one statement.

    Raises:
        StoreWriteFailed: On any database error, including a Stripe
            subscription id already claimed by a different user.
    """
    values: dict[str, Any] = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "stripe_customer_id": stripe_customer_id,
        "stripe_subscription_id": stripe_subscription_id,
        "plan_type": plan_type,
        "status": status,
        "current_period_start": current_period_start,
        "current_period_end": current_period_end,
        "cancel_at_period_end": cancel_at_period_end,
    }

    insert = _insert_for(db)
    stmt = insert(Subscription).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            **{col: getattr(stmt.excluded, col) for col in _UPSERT_COLUMNS},
            "updated_at": func.now(),
        },
    )

    try:
        await db.execute(stmt)
        await db.flush()
    except SQLAlchemyError as e:
        logger.error("Subscription upsert failed for user %s: %s", user_id, e)
        raise StoreWriteFailed(
            "Failed to write subscription record",
            details={"user_id": str(user_id), "stripe_subscription_id": stripe_subscription_id},
            original_error=e,
        ) from e

    subscription = await get_subscription_for_user(db, user_id)
    logger.info(
        "Upserted subscription for user %s: plan=%s, status=%s, stripe_subscription=%s",
        user_id,
        plan_type,
        status,
        stripe_subscription_id,
    )
    return subscription  # type: ignore[return-value]


async def update_subscription_from_stripe(
    db: AsyncSession,
    stripe_subscription_id: str,
    keep_terminal: bool = True,
    **fields: Any,
) -> Subscription | None:
    """Overwrite fields on the row linked to a Stripe subscription.

    With ``keep_terminal`` the row is left alone once it is cancelled or
    expired. The guard lives in the UPDATE's WHERE clause so it holds under
    concurrent deliveries.

    Returns:
        The row as it stands after the write, or None if no row is linked
        to the subscription id.
    """
    unknown = set(fields) - set(_UPSERT_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")

    stmt = (
        update(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .values(**fields, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if keep_terminal:
        stmt = stmt.where(Subscription.status.not_in(TERMINAL_STATUSES))

    try:
        result = await db.execute(stmt)
        await db.flush()
    except SQLAlchemyError as e:
        logger.error("Subscription update failed for %s: %s", stripe_subscription_id, e)
        raise StoreWriteFailed(
            "Failed to update subscription record",
            details={"stripe_subscription_id": stripe_subscription_id},
            original_error=e,
        ) from e

    subscription = await get_subscription_by_stripe_subscription(db, stripe_subscription_id)
    if subscription is None:
        return None

    if result.rowcount == 0:
        logger.info(
            "Subscription %s is %s; ignoring update %s",
            stripe_subscription_id,
            subscription.status,
            fields,
        )
    else:
        logger.info("Updated subscription %s: %s", stripe_subscription_id, fields)
    return subscription
