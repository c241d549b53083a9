"""Subscription status resolution — "is this user entitled yet?"

After a checkout return the webhook that writes the subscription may still
be in flight. The resolver re-reads the state with bounded exponential
backoff and settles in one of three terminal states:

    pending -> entitled | not_entitled | timed_out

Past the budget it prefers under-granting (timed_out is not entitled) and
leaves the retry to the user. Cancelling the awaiting task stops it
immediately.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from app.config import settings
from app.models.subscription import Subscription, is_entitled

logger = logging.getLogger(__name__)


class ResolutionState(str, Enum):
    PENDING = "pending"
    ENTITLED = "entitled"
    NOT_ENTITLED = "not_entitled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff between status fetches."""

    max_attempts: int = 5
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 4.0
    max_total_wait: float = 10.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.status_poll_max_attempts,
            initial_delay=settings.status_poll_initial_delay_seconds,
            max_delay=settings.status_poll_max_delay_seconds,
            max_total_wait=settings.status_poll_max_total_wait_seconds,
        )

    def delays(self) -> Iterator[float]:
        """Sleep durations between attempts, never exceeding the total budget."""
        delay = self.initial_delay
        total = 0.0
        for _ in range(max(self.max_attempts - 1, 0)):
            step = min(delay, self.max_delay, self.max_total_wait - total)
            if step <= 0:
                return
            yield step
            total += step
            delay *= self.multiplier


@dataclass(frozen=True)
class SubscriptionStatus:
    """What a client sees of the subscription store for one user."""

    has_active_subscription: bool
    status: str
    plan_type: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    stripe_subscription_id: str | None = None

    @classmethod
    def inactive(cls) -> "SubscriptionStatus":
        return cls(has_active_subscription=False, status="inactive")

    @classmethod
    def from_record(cls, subscription: Subscription | None) -> "SubscriptionStatus":
        if subscription is None:
            return cls.inactive()
        return cls(
            has_active_subscription=subscription.has_active_subscription,
            status=subscription.status,
            plan_type=subscription.plan_type,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            stripe_subscription_id=subscription.stripe_subscription_id,
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SubscriptionStatus":
        """Build from the status endpoint's JSON.

        Entitlement is recomputed locally so a stale cached response can't
        grant access past the period end.
        """
        period_end = payload.get("current_period_end")
        if isinstance(period_end, str):
            period_end = datetime.fromisoformat(period_end.replace("Z", "+00:00")).replace(tzinfo=None)
        status = payload.get("status") or "inactive"
        return cls(
            has_active_subscription=bool(payload.get("has_active_subscription"))
            and is_entitled(status, period_end),
            status=status,
            plan_type=payload.get("plan_type"),
            current_period_end=period_end,
            cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
            stripe_subscription_id=payload.get("stripe_subscription_id"),
        )


@dataclass(frozen=True)
class Resolution:
    state: ResolutionState
    status: SubscriptionStatus
    attempts: int
    waited_seconds: float

    @property
    def entitled(self) -> bool:
        return self.state is ResolutionState.ENTITLED


StatusFetcher = Callable[[], Awaitable[SubscriptionStatus]]


class StatusResolver:
    """Runs the pending -> entitled | not_entitled | timed_out state machine."""

    def __init__(
        self,
        fetch: StatusFetcher,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._fetch = fetch
        self._policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self.state = ResolutionState.PENDING

    async def _fetch_once(self) -> SubscriptionStatus:
        try:
            return await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception:
            # Counts as an empty attempt; the next one re-reads.
            logger.warning("Subscription status fetch failed", exc_info=True)
            return SubscriptionStatus.inactive()

    async def resolve(self, expect_record: bool = False) -> Resolution:
        """Settle the user's entitlement.

        Args:
            expect_record: True when returning from checkout, where a missing
                or not-yet-active record means "webhook still in flight"
                rather than "not subscribed".
        """
        self.state = ResolutionState.PENDING
        delays = self._policy.delays()
        attempts = 0
        waited = 0.0

        while True:
            attempts += 1
            status = await self._fetch_once()

            if status.has_active_subscription:
                return self._settle(ResolutionState.ENTITLED, status, attempts, waited)
            if not expect_record:
                return self._settle(ResolutionState.NOT_ENTITLED, status, attempts, waited)

            delay = next(delays, None) if attempts < self._policy.max_attempts else None
            if delay is None:
                return self._settle(ResolutionState.TIMED_OUT, status, attempts, waited)

            logger.debug("Subscription not active yet (attempt %d), retrying in %.2fs", attempts, delay)
            await self._sleep(delay)
            waited += delay

    def _settle(
        self,
        state: ResolutionState,
        status: SubscriptionStatus,
        attempts: int,
        waited: float,
    ) -> Resolution:
        self.state = state
        if state is ResolutionState.TIMED_OUT:
            logger.info(
                "Subscription status still %s after %d attempts (%.1fs); treating as not entitled",
                status.status,
                attempts,
                waited,
            )
        return Resolution(state=state, status=status, attempts=attempts, waited_seconds=waited)
