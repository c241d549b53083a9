"""Exception handlers that render billing errors as JSON."""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.billing.errors import BillingError

logger = logging.getLogger(__name__)


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render any BillingError as ``{error, message, details, timestamp}``."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)

    body = exc.to_dict()
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)  # type: ignore[arg-type]
