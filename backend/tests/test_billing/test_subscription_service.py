"""Tests for subscription service — store operations (pure DB, no HTTP)."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import StoreWriteFailed
from app.models.subscription import is_entitled
from app.services.subscription_service import (
    get_subscription_by_stripe_customer,
    get_subscription_by_stripe_subscription,
    get_subscription_for_user,
    update_subscription_from_stripe,
    upsert_subscription,
)
from app.services.user_service import get_user_by_email, get_user_by_id


class TestIsEntitled:
    """Test the derived entitlement rule."""

    NOW = datetime(2026, 1, 15)

    def test_active_with_future_period(self):
        assert is_entitled("active", self.NOW + timedelta(days=1), now=self.NOW)

    def test_trialing_with_future_period(self):
        assert is_entitled("trialing", self.NOW + timedelta(days=1), now=self.NOW)

    def test_active_without_period_end(self):
        assert is_entitled("active", None, now=self.NOW)

    def test_period_ended(self):
        assert not is_entitled("active", self.NOW - timedelta(seconds=1), now=self.NOW)

    @pytest.mark.parametrize("status", ["past_due", "cancelled", "expired", None])
    def test_non_entitling_statuses(self, status):
        assert not is_entitled(status, self.NOW + timedelta(days=30), now=self.NOW)


class TestGetSubscriptionForUser:
    """Test get_subscription_for_user."""

    @pytest.mark.asyncio
    async def test_no_row(self, db_session: AsyncSession, test_user):
        assert await get_subscription_for_user(db_session, test_user.id) is None

    @pytest.mark.asyncio
    async def test_existing_row(self, db_session: AsyncSession, test_user, make_subscription):
        created = await make_subscription(test_user, stripe_subscription_id="sub_get_1")
        found = await get_subscription_for_user(db_session, test_user.id)
        assert found.id == created.id


class TestUpsertSubscription:
    """Test upsert_subscription."""

    @pytest.mark.asyncio
    async def test_inserts_new_row(self, db_session: AsyncSession, test_user):
        period_end = datetime(2100, 1, 1)
        subscription = await upsert_subscription(
            db_session,
            user_id=test_user.id,
            stripe_customer_id="cus_upsert_1",
            stripe_subscription_id="sub_upsert_1",
            plan_type="yearly",
            status="active",
            current_period_start=datetime(2099, 1, 1),
            current_period_end=period_end,
        )

        assert subscription.user_id == test_user.id
        assert subscription.plan_type == "yearly"
        assert subscription.status == "active"
        assert subscription.current_period_end == period_end
        assert subscription.cancel_at_period_end is False
        assert subscription.has_active_subscription is True

    @pytest.mark.asyncio
    async def test_overwrites_existing_row(
        self, db_session: AsyncSession, test_user, make_subscription
    ):
        """A second write for the same user replaces fields and keeps one row."""
        original = await make_subscription(
            test_user, status="cancelled", stripe_subscription_id="sub_upsert_old"
        )

        subscription = await upsert_subscription(
            db_session,
            user_id=test_user.id,
            stripe_customer_id="cus_upsert_new",
            stripe_subscription_id="sub_upsert_new",
            plan_type="monthly",
            status="active",
            cancel_at_period_end=True,
        )

        assert subscription.id == original.id
        assert subscription.stripe_subscription_id == "sub_upsert_new"
        assert subscription.stripe_customer_id == "cus_upsert_new"
        assert subscription.status == "active"
        assert subscription.cancel_at_period_end is True
        assert await get_subscription_by_stripe_subscription(db_session, "sub_upsert_old") is None

    @pytest.mark.asyncio
    async def test_same_write_twice_is_idempotent(self, db_session: AsyncSession, test_user):
        kwargs = dict(
            user_id=test_user.id,
            stripe_customer_id="cus_twice",
            stripe_subscription_id="sub_twice",
            plan_type="monthly",
            status="active",
            current_period_end=datetime(2100, 1, 1),
        )
        first = await upsert_subscription(db_session, **kwargs)
        first_id = first.id
        second = await upsert_subscription(db_session, **kwargs)

        assert second.id == first_id
        assert second.status == "active"
        assert second.current_period_end == datetime(2100, 1, 1)

    @pytest.mark.asyncio
    async def test_subscription_id_owned_by_other_user_fails(
        self, db_session: AsyncSession, make_user, make_subscription
    ):
        owner = await make_user()
        other = await make_user()
        await make_subscription(owner, stripe_subscription_id="sub_claimed")

        with pytest.raises(StoreWriteFailed) as exc_info:
            await upsert_subscription(
                db_session,
                user_id=other.id,
                stripe_customer_id="cus_other",
                stripe_subscription_id="sub_claimed",
                plan_type="monthly",
                status="active",
            )
        assert exc_info.value.retryable is True
        assert exc_info.value.details["stripe_subscription_id"] == "sub_claimed"


class TestUpdateSubscriptionFromStripe:
    """Test update_subscription_from_stripe."""

    @pytest.mark.asyncio
    async def test_updates_fields(self, db_session: AsyncSession, test_user, make_subscription):
        subscription = await make_subscription(test_user, stripe_subscription_id="sub_upd_1")

        updated = await update_subscription_from_stripe(
            db_session, "sub_upd_1", status="past_due", cancel_at_period_end=True
        )

        assert updated.id == subscription.id
        assert updated.status == "past_due"
        assert updated.cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_missing_row_returns_none(self, db_session: AsyncSession):
        assert await update_subscription_from_stripe(db_session, "sub_missing", status="active") is None

    @pytest.mark.asyncio
    async def test_terminal_rows_are_kept(
        self, db_session: AsyncSession, test_user, make_subscription
    ):
        await make_subscription(test_user, status="expired", stripe_subscription_id="sub_term_1")

        updated = await update_subscription_from_stripe(db_session, "sub_term_1", status="active")

        assert updated.status == "expired"

    @pytest.mark.asyncio
    async def test_keep_terminal_false_overrides(
        self, db_session: AsyncSession, test_user, make_subscription
    ):
        await make_subscription(test_user, status="expired", stripe_subscription_id="sub_term_2")

        updated = await update_subscription_from_stripe(
            db_session, "sub_term_2", keep_terminal=False, status="cancelled"
        )

        assert updated.status == "cancelled"

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, db_session: AsyncSession):
        with pytest.raises(ValueError, match="Unknown subscription fields"):
            await update_subscription_from_stripe(db_session, "sub_x", user_id="someone")


class TestLookups:
    """Test customer and user lookups used by webhook attribution."""

    @pytest.mark.asyncio
    async def test_by_stripe_customer(self, db_session: AsyncSession, test_user, make_subscription):
        created = await make_subscription(test_user, stripe_customer_id="cus_lookup_1")
        found = await get_subscription_by_stripe_customer(db_session, "cus_lookup_1")
        assert found.id == created.id

    @pytest.mark.asyncio
    async def test_by_stripe_customer_not_found(self, db_session: AsyncSession):
        assert await get_subscription_by_stripe_customer(db_session, "cus_nobody") is None

    @pytest.mark.asyncio
    async def test_user_by_email_is_case_insensitive(self, db_session: AsyncSession, make_user):
        user = await make_user(email="Mixed.Case@Test.com")
        found = await get_user_by_email(db_session, "  mixed.case@test.COM ")
        assert found.id == user.id

    @pytest.mark.asyncio
    async def test_user_by_id_accepts_strings(self, db_session: AsyncSession, test_user):
        assert (await get_user_by_id(db_session, str(test_user.id))).id == test_user.id

    @pytest.mark.asyncio
    async def test_user_by_malformed_id(self, db_session: AsyncSession):
        assert await get_user_by_id(db_session, "not-a-uuid") is None
