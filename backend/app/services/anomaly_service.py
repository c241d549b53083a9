"""Anomaly service — records webhook events that were acknowledged but not applied."""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.webhook_anomaly import WebhookAnomaly

logger = logging.getLogger(__name__)


async def record_anomaly(
    db: AsyncSession,
    event_id: str,
    event_type: str,
    reason: str,
    stripe_customer_id: str | None = None,
    stripe_subscription_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> WebhookAnomaly:
    """Persist an anomaly row and emit a warning for operators."""
    anomaly = WebhookAnomaly(
        event_id=event_id,
        event_type=event_type,
        reason=reason,
        stripe_customer_id=stripe_customer_id,
        stripe_subscription_id=stripe_subscription_id,
        details=details or {},
    )
    db.add(anomaly)
    await db.flush()
    logger.warning(
        "Webhook anomaly recorded for %s (%s): %s [customer=%s, subscription=%s]",
        event_id,
        event_type,
        reason,
        stripe_customer_id,
        stripe_subscription_id,
    )
    return anomaly


async def list_anomalies(
    db: AsyncSession, event_id: str | None = None, limit: int = 50
) -> list[WebhookAnomaly]:
    """Most recent anomalies first, optionally for a single Stripe event."""
    stmt = select(WebhookAnomaly).order_by(WebhookAnomaly.created_at.desc()).limit(limit)
    if event_id is not None:
        stmt = stmt.where(WebhookAnomaly.event_id == event_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())
