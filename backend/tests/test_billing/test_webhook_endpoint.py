"""Tests for POST /api/v1/webhooks/stripe with real signature verification."""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.services.anomaly_service import list_anomalies
from app.services.notification_service import queued_notifications
from app.services.subscription_service import get_subscription_for_user

WEBHOOK_URL = "/api/v1/webhooks/stripe"
FUTURE_TS = 4102444800


def _sign(payload: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    secret = secret or settings.stripe_webhook_secret
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event(event_type: str, data_object: dict, event_id: str = "evt_endpoint_1") -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": data_object}}
    ).encode()


def _stripe_sub(sub_id: str, status: str = "active", metadata: dict | None = None) -> dict:
    return {
        "id": sub_id,
        "customer": "cus_endpoint_1",
        "status": status,
        "cancel_at_period_end": False,
        "metadata": metadata or {},
        "items": {
            "data": [{"price": {"id": "price_test_monthly"}, "current_period_end": FUTURE_TS}]
        },
    }


async def _post(client: AsyncClient, payload: bytes, signature: str | None = "auto"):
    headers = {"Content-Type": "application/json"}
    if signature == "auto":
        headers["Stripe-Signature"] = _sign(payload)
    elif signature is not None:
        headers["Stripe-Signature"] = signature
    return await client.post(WEBHOOK_URL, content=payload, headers=headers)


class TestSignatureVerification:
    """Requests that can't be verified are rejected before anything runs."""

    @pytest.mark.asyncio
    async def test_missing_signature(self, client: AsyncClient):
        response = await _post(client, _event("customer.created", {"id": "cus_1"}), signature=None)
        assert response.status_code == 400
        assert response.json()["error"] == "SignatureVerificationFailed"
        assert response.json()["message"] == "Missing signature"

    @pytest.mark.asyncio
    async def test_wrong_secret(self, client: AsyncClient):
        payload = _event("customer.created", {"id": "cus_1"})
        response = await _post(client, payload, signature=_sign(payload, secret="whsec_wrong"))
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid signature"

    @pytest.mark.asyncio
    async def test_stale_timestamp(self, client: AsyncClient):
        payload = _event("customer.created", {"id": "cus_1"})
        response = await _post(
            client, payload, signature=_sign(payload, timestamp=int(time.time()) - 3600)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_tampered_payload_changes_nothing(
        self, client: AsyncClient, db_session: AsyncSession, test_user, make_subscription
    ):
        subscription = await make_subscription(test_user, stripe_subscription_id="sub_tamper")
        original = _event("customer.subscription.updated", _stripe_sub("sub_tamper"))
        tampered = _event("customer.subscription.deleted", _stripe_sub("sub_tamper"))

        response = await _post(client, tampered, signature=_sign(original))

        assert response.status_code == 400
        await db_session.refresh(subscription)
        assert subscription.status == "active"

    @pytest.mark.asyncio
    async def test_signed_garbage_payload(self, client: AsyncClient):
        payload = b"not json at all"
        response = await _post(client, payload)
        assert response.status_code == 400


class TestEventProcessing:
    """Verified events are routed and acknowledged."""

    @pytest.mark.asyncio
    async def test_unhandled_type_acknowledged(self, client: AsyncClient):
        response = await _post(client, _event("customer.created", {"id": "cus_1"}))
        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_checkout_completed_then_status_is_entitled(
        self, client: AsyncClient, test_user, auth_headers: dict
    ):
        session = {
            "id": "cs_endpoint_1",
            "object": "checkout.session",
            "mode": "subscription",
            "payment_status": "paid",
            "customer": "cus_endpoint_1",
            "subscription": "sub_endpoint_1",
            "customer_details": {"email": test_user.email},
            "metadata": {"user_id": str(test_user.id), "plan_type": "monthly"},
        }
        with (
            patch(
                "app.billing.webhooks.get_subscription",
                new_callable=AsyncMock,
                return_value=_stripe_sub("sub_endpoint_1"),
            ),
            patch("app.services.notification_service.notify", return_value=None),
        ):
            response = await _post(client, _event("checkout.session.completed", session))

        assert response.status_code == 200
        assert response.json() == {"status": "processed"}

        status_response = await client.get("/api/v1/billing/subscription", headers=auth_headers)
        data = status_response.json()
        assert data["has_active_subscription"] is True
        assert data["stripe_subscription_id"] == "sub_endpoint_1"

    @pytest.mark.asyncio
    async def test_unresolvable_checkout_is_acknowledged(
        self, client: AsyncClient, db_session: AsyncSession
    ):
        session = {
            "id": "cs_orphan",
            "mode": "subscription",
            "payment_status": "paid",
            "customer": "cus_orphan",
            "subscription": "sub_orphan",
            "customer_details": {"email": "ghost@test.com"},
            "metadata": {},
        }
        with patch(
            "app.billing.webhooks.get_subscription",
            new_callable=AsyncMock,
            return_value=_stripe_sub("sub_orphan"),
        ):
            response = await _post(
                client, _event("checkout.session.completed", session, event_id="evt_orphan_http")
            )

        assert response.status_code == 200
        assert response.json() == {"status": "unresolved"}
        assert len(await list_anomalies(db_session, event_id="evt_orphan_http")) == 1

    @pytest.mark.asyncio
    async def test_gateway_outage_asks_for_redelivery(
        self, client: AsyncClient, db_session: AsyncSession, test_user
    ):
        session = {
            "id": "cs_outage",
            "mode": "subscription",
            "payment_status": "paid",
            "customer": "cus_endpoint_1",
            "subscription": "sub_outage",
            "metadata": {"user_id": str(test_user.id)},
        }
        # Keep the user out of the savepoint the failed webhook rolls back.
        await db_session.commit()

        with patch(
            "app.billing.webhooks.get_subscription",
            new_callable=AsyncMock,
            side_effect=stripe.APIConnectionError("timeout"),
        ):
            response = await _post(client, _event("checkout.session.completed", session))

        assert response.status_code == 500
        assert await get_subscription_for_user(db_session, test_user.id) is None

    @pytest.mark.asyncio
    async def test_deleted_event_cancels(
        self, client: AsyncClient, db_session: AsyncSession, test_user, make_subscription
    ):
        subscription = await make_subscription(test_user, stripe_subscription_id="sub_http_del")

        payload = _event("customer.subscription.deleted", _stripe_sub("sub_http_del", "canceled"))
        first = await _post(client, payload)
        second = await _post(client, payload)

        assert first.status_code == second.status_code == 200
        await db_session.refresh(subscription)
        assert subscription.status == "cancelled"

    @pytest.mark.asyncio
    async def test_delayed_update_after_delete_stays_cancelled(
        self, client: AsyncClient, db_session: AsyncSession, test_user, make_subscription
    ):
        subscription = await make_subscription(test_user, stripe_subscription_id="sub_http_race")

        deleted = _event(
            "customer.subscription.deleted", _stripe_sub("sub_http_race", "canceled"), "evt_del"
        )
        stale = _event(
            "customer.subscription.updated", _stripe_sub("sub_http_race", "active"), "evt_upd"
        )
        assert (await _post(client, deleted)).status_code == 200
        assert (await _post(client, stale)).status_code == 200

        await db_session.refresh(subscription)
        assert subscription.status == "cancelled"


class TestNotificationTiming:
    """Emails go out only for state that was committed."""

    def _session(self, user, sub_id: str) -> dict:
        return {
            "id": f"cs_{sub_id}",
            "mode": "subscription",
            "payment_status": "paid",
            "customer": "cus_endpoint_1",
            "subscription": sub_id,
            "customer_details": {"email": user.email},
            "metadata": {"user_id": str(user.id)},
        }

    @pytest.mark.asyncio
    async def test_sent_after_commit_and_once_per_subscription(
        self, client: AsyncClient, test_user
    ):
        payload = _event("checkout.session.completed", self._session(test_user, "sub_mail_1"))
        with (
            patch(
                "app.billing.webhooks.get_subscription",
                new_callable=AsyncMock,
                return_value=_stripe_sub("sub_mail_1"),
            ),
            patch("app.services.notification_service.notify", return_value=None) as notify,
        ):
            first = await _post(client, payload)
            second = await _post(client, payload)

        assert first.status_code == second.status_code == 200
        notify.assert_called_once_with("subscription_success", test_user.email, {"plan_type": "monthly"})

    @pytest.mark.asyncio
    async def test_not_sent_when_commit_fails(
        self, client: AsyncClient, db_session: AsyncSession, test_user, monkeypatch
    ):
        payload = _event("checkout.session.completed", self._session(test_user, "sub_mail_2"))
        monkeypatch.setattr(
            db_session,
            "commit",
            AsyncMock(side_effect=OperationalError("COMMIT", {}, Exception("disk full"))),
        )
        with (
            patch(
                "app.billing.webhooks.get_subscription",
                new_callable=AsyncMock,
                return_value=_stripe_sub("sub_mail_2"),
            ),
            patch("app.services.notification_service.notify", return_value=None) as notify,
        ):
            response = await _post(client, payload)

        assert response.status_code == 500
        notify.assert_not_called()
        assert queued_notifications(db_session) == []
