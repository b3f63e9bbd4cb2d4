"""HTTP middleware: Prometheus metrics, correlation IDs and access logging."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from membella.core.logging import clear_correlation_id, log_error, log_info, set_correlation_id
from membella.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)
_NUMERIC_ID_RE = re.compile(r"/\d+(?=/|$)")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts and times requests per method and endpoint.

    Payment and subscription ids in the path are collapsed to ``{id}`` so
    the ``endpoint`` label stays bounded.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = self._normalize_path(request.url.path)
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=endpoint)
        in_progress.inc()

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            HTTP_REQUESTS_TOTAL.labels(
                method=method, endpoint=endpoint, status_code=str(status_code)
            ).inc()
            in_progress.dec()

    def _normalize_path(self, path: str) -> str:
        return _NUMERIC_ID_RE.sub("/{id}", _UUID_RE.sub("{id}", path))


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds ``X-Correlation-ID`` (or a fresh UUID) for the request and echoes it back."""

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(self.CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers[self.CORRELATION_ID_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access-log line per request, or an error line if the handler raised."""

    def __init__(self, app: ASGIApp, log_query: bool = True):
        super().__init__(app)
        self.log_query = log_query
        self.logger = logging.getLogger("membella.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        context = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
        if self.log_query and request.url.query:
            context["query"] = request.url.query

        try:
            response = await call_next(request)
        except Exception as e:
            log_error(self.logger, "Request failed", exception=e, duration_ms=_elapsed_ms(started), **context)
            raise

        log_info(
            self.logger,
            f"{request.method} {request.url.path} {response.status_code}",
            status_code=response.status_code,
            duration_ms=_elapsed_ms(started),
            **context,
        )
        return response
