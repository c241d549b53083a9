"""Notification sink — fire-and-forget billing emails.

Delivery is out of scope for this service: notifications are handed to an
external email function over HTTP (``NOTIFICATION_WEBHOOK_URL``) or, when
none is configured, logged as a simulated send. Failures never reach the
caller.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings

logger = logging.getLogger(__name__)

SUBSCRIPTION_SUCCESS = "subscription_success"
PAYMENT_FAILED = "payment_failed"
VALID_NOTIFICATION_TYPES = {SUBSCRIPTION_SUCCESS, PAYMENT_FAILED}

# Strong references so scheduled sends aren't garbage-collected mid-flight.
_pending: set[asyncio.Task] = set()


@dataclass(frozen=True)
class Notification:
    type: str
    email: str
    data: dict[str, Any] = field(default_factory=dict)


async def deliver(notification: Notification) -> None:
    """Send one notification. Raises on transport errors."""
    if not settings.notification_webhook_url:
        logger.info(
            "Notification [%s] to %s (simulated): %s",
            notification.type,
            notification.email,
            notification.data,
        )
        return

    async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
        response = await client.post(settings.notification_webhook_url, json=asdict(notification))
        response.raise_for_status()
    logger.info("Notification [%s] sent to %s", notification.type, notification.email)


async def _deliver_quietly(notification: Notification) -> None:
    try:
        await deliver(notification)
    except (httpx.HTTPError, OSError) as e:
        logger.error(
            "Notification [%s] to %s failed: %s", notification.type, notification.email, e
        )


def notify(type: str, email: str | None, data: dict[str, Any] | None = None) -> asyncio.Task | None:
    """Schedule a notification without waiting for it.

    Returns the scheduled task (mostly useful in tests), or None when there
    is nobody to notify.
    """
    if not email:
        logger.debug("Skipping %s notification: no recipient email", type)
        return None
    if type not in VALID_NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type '{type}'")

    task = asyncio.get_running_loop().create_task(
        _deliver_quietly(Notification(type=type, email=email, data=data or {}))
    )
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


# ---------------------------------------------------------------------------
# Deferred sends: queued on a DB session, released after it commits
# ---------------------------------------------------------------------------

_SESSION_QUEUE_KEY = "pending_notifications"


def notify_after_commit(
    db: AsyncSession, type: str, email: str | None, data: dict[str, Any] | None = None
) -> None:
    """Queue a notification on the session until its transaction commits.

    The caller that owns the commit releases the queue with
    :func:`send_queued` (or drops it with :func:`discard_queued` on rollback).
    """
    if not email:
        logger.debug("Skipping %s notification: no recipient email", type)
        return
    if type not in VALID_NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type '{type}'")
    db.info.setdefault(_SESSION_QUEUE_KEY, []).append(
        Notification(type=type, email=email, data=data or {})
    )


def queued_notifications(db: AsyncSession) -> list[Notification]:
    return list(db.info.get(_SESSION_QUEUE_KEY, []))


def send_queued(db: AsyncSession) -> list[asyncio.Task]:
    """Schedule every notification queued on the session and clear the queue."""
    queued: list[Notification] = db.info.pop(_SESSION_QUEUE_KEY, [])
    tasks = [notify(n.type, n.email, n.data) for n in queued]
    return [task for task in tasks if task is not None]


def discard_queued(db: AsyncSession) -> None:
    dropped = db.info.pop(_SESSION_QUEUE_KEY, [])
    if dropped:
        logger.info("Dropped %d notification(s) from a rolled-back transaction", len(dropped))
