"""Seed the database with demo users in every billing state.

Each user gets a development access token signed with JWT_SECRET_KEY so the
front end (or curl) can call the billing API as that user:

- trial@askstan.test     — no subscription record (never subscribed)
- monthly@askstan.test   — active monthly subscription
- pastdue@askstan.test   — yearly subscription with a failed renewal
- cancelled@askstan.test — cancelled monthly subscription

Stripe ids are placeholders; they don't exist in any Stripe account.

Run inside Docker:
    docker compose exec backend python -m scripts.seed_data
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import delete, select

from app.auth.jwt import create_access_token
from app.database import async_session_factory
from app.models.subscription import Subscription
from app.models.user import User

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

DEMO_USERS = [
    {"email": "trial@askstan.test", "name": "Trial User", "subscription": None},
    {
        "email": "monthly@askstan.test",
        "name": "Monthly Subscriber",
        "subscription": {"plan_type": "monthly", "status": "active", "days_left": 21},
    },
    {
        "email": "pastdue@askstan.test",
        "name": "Past Due Subscriber",
        "subscription": {"plan_type": "yearly", "status": "past_due", "days_left": 3},
    },
    {
        "email": "cancelled@askstan.test",
        "name": "Cancelled Subscriber",
        "subscription": {"plan_type": "monthly", "status": "cancelled", "days_left": -10},
    },
]

PERIOD_DAYS = {"monthly": 30, "yearly": 365}


def _build_subscription(user: User, index: int, data: dict) -> Subscription:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    period_end = now + timedelta(days=data["days_left"])
    return Subscription(
        user_id=user.id,
        stripe_customer_id=f"cus_demo_{index:04d}",
        stripe_subscription_id=f"sub_demo_{index:04d}",
        plan_type=data["plan_type"],
        status=data["status"],
        current_period_start=period_end - timedelta(days=PERIOD_DAYS[data["plan_type"]]),
        current_period_end=period_end,
        cancel_at_period_end=False,
    )


# ---------------------------------------------------------------------------
# Main seed function
# ---------------------------------------------------------------------------


async def seed() -> None:
    """Create the demo users and their subscriptions.

    Idempotent: existing demo users and their subscriptions are removed and
    re-created.
    """
    emails = [u["email"] for u in DEMO_USERS]
    tokens: list[tuple[str, str, str]] = []

    async with async_session_factory() as session:
        result = await session.execute(select(User.id).where(User.email.in_(emails)))
        existing_ids = list(result.scalars().all())
        if existing_ids:
            print(f"⚠️  {len(existing_ids)} demo user(s) already exist. Deleting and re-seeding...")
            await session.execute(delete(Subscription).where(Subscription.user_id.in_(existing_ids)))
            await session.execute(delete(User).where(User.id.in_(existing_ids)))
            await session.flush()

        for index, data in enumerate(DEMO_USERS, start=1):
            user = User(email=data["email"], name=data["name"], is_active=True)
            session.add(user)
            await session.flush()

            sub_data = data["subscription"]
            if sub_data is None:
                state = "no subscription"
            else:
                subscription = _build_subscription(user, index, sub_data)
                session.add(subscription)
                await session.flush()
                state = f"{subscription.plan_type}/{subscription.status}"

            tokens.append((user.email, state, create_access_token(str(user.id), email=user.email)))
            print(f"✅ Created {user.email} ({state})")

        await session.commit()

    print()
    print("=" * 60)
    print("📊 Seed Summary: development access tokens")
    print("=" * 60)
    for email, state, token in tokens:
        print(f"   {email} [{state}]")
        print(f"      Authorization: Bearer {token}")
    print("=" * 60)
    print("🎉 Done! Try GET /api/v1/billing/subscription with one of the tokens above")


if __name__ == "__main__":
    asyncio.run(seed())
