"""Subscription model — Stripe billing state per user."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, String, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

PLAN_TYPES = ("monthly", "yearly")
SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due", "cancelled", "expired")
ENTITLED_STATUSES = frozenset({"active", "trialing"})
TERMINAL_STATUSES = frozenset({"cancelled", "expired"})


def is_entitled(
    status: str | None,
    current_period_end: datetime | None,
    now: datetime | None = None,
) -> bool:
    """Derived entitlement: live status and a period that has not ended.

    Timestamps are naive UTC, matching the DB columns.
    """
    if status not in ENTITLED_STATUSES:
        return False
    if current_period_end is None:
        return True
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    return current_period_end > now


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a user's Stripe subscription. Upserted, never deleted."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("plan_type IN ('monthly', 'yearly')", name="ck_subscriptions_plan_type"),
        CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'cancelled', 'expired')",
            name="ck_subscriptions_status",
        ),
    )

    # Foreign key — one subscription per user (UNIQUE enforces one-to-one)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Stripe identifiers. A customer may be re-created upstream, so only the
    # subscription id is globally unique.
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Plan & status
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False, server_default="monthly")
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Billing period (naive UTC)
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    @property
    def has_active_subscription(self) -> bool:
        return is_entitled(self.status, self.current_period_end)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan_type={self.plan_type}, status={self.status})>"
        )
