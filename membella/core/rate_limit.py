"""Per-client request rate limits for checkout and the gateway webhook.

Counters live in ``RATE_LIMIT_STORAGE_URI`` (process memory by default; point
it at Redis when running several workers).
"""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from membella.core.config import settings
from membella.core.exceptions import create_error_response
from membella.core.logging import log_warning

logger = logging.getLogger(__name__)

CHECKOUT_LIMIT_MESSAGE = "Too many payment attempts. Please wait before trying again."
WEBHOOK_LIMIT_MESSAGE = "Webhook rate limit exceeded"

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render a 429 in the standard error body."""
    log_warning(
        logger,
        f"Rate limit exceeded: {exc.detail}",
        method=request.method,
        path=request.url.path,
        client=get_remote_address(request),
        limit=str(exc.limit.limit) if getattr(exc, "limit", None) else None,
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=create_error_response(status.HTTP_429_TOO_MANY_REQUESTS, str(exc.detail)),
    )
