"""Prometheus metrics middleware for HTTP request instrumentation.

Exposes standard RED metrics (Rate, Errors, Duration) as Prometheus
counters and histograms, plus billing counters for webhook handling,
subscription resumes and queue price application.

Path normalisation collapses path parameters (e.g. ``/plans/abc123`` ->
``/plans/{id}``) to prevent unbounded label cardinality.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "billing_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "billing_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "billing_webhook_events_total",
    "Processor webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)

SUBSCRIPTION_RESUMES_TOTAL = Counter(
    "billing_subscription_resumes_total",
    "Per-subscription outcomes of automatic resume runs",
    ["outcome"],
)

PRICE_QUEUE_APPLIED_TOTAL = Counter(
    "billing_price_queue_applied_total",
    "Queue items processed by the apply-due job by outcome",
    ["outcome"],
)


# ---------------------------------------------------------------------------
# Path normalisation: collapse hex IDs, processor IDs, and numeric segments
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # Long hex strings (internal row ids)
    (re.compile(r"/[0-9a-f]{12,64}"), "/{id}"),
    # Stripe-style ids (acct_..., sub_..., price_...)
    (re.compile(r"/[a-z]+_[0-9A-Za-z]{8,}"), "/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()

        HTTP_REQUEST_DURATION.labels(
            method=method,
            path=normalised,
        ).observe(duration)

        return response
