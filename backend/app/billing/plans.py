"""Plan definitions — billing intervals and their Stripe prices."""

from dataclasses import dataclass

from app.billing.errors import PlanNotConfigured, UnknownPlan
from app.config import settings


@dataclass(frozen=True)
class Plan:
    """A purchasable subscription plan."""

    plan_type: str
    display_name: str
    interval: str  # Stripe recurring interval
    price_cents: int  # in cents (e.g., 499 = $4.99)
    stripe_price_id: str | None
    savings: str | None = None


def _plans() -> dict[str, Plan]:
    # Built on each call so price ids picked up from settings stay current.
    return {
        "monthly": Plan(
            plan_type="monthly",
            display_name="Monthly Plan",
            interval="month",
            price_cents=499,
            stripe_price_id=settings.stripe_monthly_price_id or None,
        ),
        "yearly": Plan(
            plan_type="yearly",
            display_name="Yearly Plan",
            interval="year",
            price_cents=4999,
            stripe_price_id=settings.stripe_yearly_price_id or None,
            savings="17% savings",
        ),
    }


VALID_PLAN_TYPES: frozenset[str] = frozenset({"monthly", "yearly"})
DEFAULT_PLAN_TYPE = "monthly"


def list_plans() -> list[Plan]:
    return list(_plans().values())


def get_plan(plan_type: str) -> Plan:
    """Get a plan by type. Raises UnknownPlan if we don't sell it."""
    plan = _plans().get(plan_type)
    if plan is None:
        raise UnknownPlan(
            f"Invalid plan type '{plan_type}'. Choose 'monthly' or 'yearly'.",
            details={"plan_type": plan_type},
        )
    return plan


def get_price_id(plan_type: str) -> str:
    """Resolve a plan type to its configured Stripe price id."""
    plan = get_plan(plan_type)
    if not plan.stripe_price_id:
        raise PlanNotConfigured(
            f"Stripe price ID not configured for plan '{plan_type}'.",
            details={"plan_type": plan_type},
        )
    return plan.stripe_price_id


def get_plan_type_by_price_id(price_id: str | None) -> str | None:
    """Reverse lookup: Stripe price ID -> plan type. Returns None if not found."""
    if not price_id:
        return None
    for plan in _plans().values():
        if plan.stripe_price_id and plan.stripe_price_id == price_id:
            return plan.plan_type
    return None
