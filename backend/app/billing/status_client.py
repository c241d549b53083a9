"""HTTP client for the subscription status endpoint.

Used by consumers that sit outside this process (the web front end's
server-side rendering, support tooling) to run the same bounded resolution
the long-poll endpoint runs in-process.
"""

import logging

import httpx

from app.billing.status_resolver import (
    Resolution,
    RetryPolicy,
    StatusResolver,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

STATUS_PATH = "/api/v1/billing/subscription"


class SubscriptionStatusClient:
    """Fetches the caller's subscription status over HTTP and resolves entitlement."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str,
        policy: RetryPolicy | None = None,
    ):
        self._http = http_client
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._policy = policy

    async def fetch_status(self) -> SubscriptionStatus:
        response = await self._http.get(STATUS_PATH, headers=self._headers)
        response.raise_for_status()
        return SubscriptionStatus.from_payload(response.json())

    async def resolve_on_sign_in(self) -> Resolution:
        """One read; no record simply means not subscribed."""
        return await StatusResolver(self.fetch_status, self._policy).resolve(expect_record=False)

    async def resolve_after_checkout(self) -> Resolution:
        """Poll with backoff while the checkout webhook lands."""
        resolution = await StatusResolver(self.fetch_status, self._policy).resolve(
            expect_record=True
        )
        logger.info(
            "Post-checkout status resolved to %s after %d attempt(s)",
            resolution.state.value,
            resolution.attempts,
        )
        return resolution
