"""Webhook anomaly model — events acknowledged without being applied."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UUIDPrimaryKeyMixin


class WebhookAnomaly(UUIDPrimaryKeyMixin, Base):
    """Append-only operator record of a webhook that could not be attributed.

    Rows here mean the gateway holds state (e.g. a paid subscription) that no
    local user owns yet; someone has to reconcile them by hand.
    """

    __tablename__ = "webhook_anomalies"

    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<WebhookAnomaly event_id={self.event_id!r} type={self.event_type!r}>"
