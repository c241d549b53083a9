"""Billing error taxonomy.

Every error carries an HTTP status so the API layer can render it without
knowing which component raised it. ``retryable`` marks transient failures
the caller (or Stripe, for webhooks) is expected to retry.
"""

from typing import Any

from fastapi import status


class BillingError(Exception):
    """Base exception for all billing errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidDiscount(BillingError):
    """Discount code does not exist or can no longer be redeemed."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: str, reason: str = "Invalid coupon code", **kwargs: Any):
        super().__init__(reason, details={"code": code}, **kwargs)
        self.code = code


class GatewayUnavailable(BillingError):
    """Stripe could not be reached or returned a server-side failure."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, operation: str, original_error: Exception | None = None):
        super().__init__(
            f"Payment provider unavailable during {operation}",
            details={"operation": operation},
            original_error=original_error,
        )
        self.operation = operation


class CustomerResolutionFailed(BillingError):
    """No usable Stripe customer could be found or created for the user."""

    status_code = status.HTTP_502_BAD_GATEWAY


class SignatureVerificationFailed(BillingError):
    """Webhook signature missing, invalid, or payload malformed."""

    status_code = status.HTTP_400_BAD_REQUEST


class UserResolutionFailed(BillingError):
    """No application user could be attributed to a gateway event.

    Never surfaced over HTTP: the ingestor acknowledges the event and
    records an anomaly instead.
    """

    status_code = status.HTTP_200_OK


class StoreWriteFailed(BillingError):
    """The subscription store rejected or failed a write."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = True


class UnknownPlan(BillingError):
    """Requested plan type is not one we sell."""

    status_code = status.HTTP_400_BAD_REQUEST


class PlanNotConfigured(BillingError):
    """Plan exists but its Stripe price id is missing from configuration."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
