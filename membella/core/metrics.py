"""Prometheus metrics for the payments service.

HTTP traffic is recorded by ``MetricsMiddleware``; the payment workflow
records checkouts, status transitions, webhook deliveries and polling.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Multiprocess mode (e.g. gunicorn with several workers)
if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "membella_payments_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Payment Workflow Metrics
# ============================================
PAYMENTS_CREATED_TOTAL = Counter(
    "payments_created_total",
    "Payments created at checkout",
    ["method"],
    registry=REGISTRY,
)

PAYMENT_TRANSITIONS_TOTAL = Counter(
    "payment_transitions_total",
    "Payment status transition attempts",
    ["from_status", "to_status", "outcome"],
    registry=REGISTRY,
)

SUBSCRIPTION_ACTIVATIONS_TOTAL = Counter(
    "subscription_activations_total",
    "Subscription activations by kind",
    ["kind"],
    registry=REGISTRY,
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Gateway webhook deliveries",
    ["kind", "outcome"],
    registry=REGISTRY,
)

GATEWAY_REQUESTS_TOTAL = Counter(
    "gateway_requests_total",
    "Requests made to the payment gateway",
    ["operation", "status"],
    registry=REGISTRY,
)

POLL_ATTEMPTS = Histogram(
    "payment_poll_attempts",
    "Attempts used by status polling before returning",
    ["outcome"],
    buckets=[1, 2, 3, 5, 10, 20, 60, 120, 300],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
