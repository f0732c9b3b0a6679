"""Prometheus instrumentation.

HTTP request rate, errors and latency are recorded by
:class:`PrometheusMiddleware`.  Pipeline counters for inbound events,
outbound deliveries and SSRF rejections are incremented by the services.

Path parameters (webhook UUIDs, numeric ids) are collapsed to ``{id}`` so
label cardinality stays bounded.
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
    "stageflow_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "stageflow_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "stageflow_webhook_deliveries_total",
    "Outbound webhook delivery attempts by outcome",
    ["outcome"],
)

INBOUND_EVENTS_TOTAL = Counter(
    "stageflow_inbound_events_total",
    "Inbound provider events by outcome",
    ["outcome"],
)

SSRF_BLOCKS_TOTAL = Counter(
    "stageflow_ssrf_blocks_total",
    "Webhook deliveries refused by the SSRF guard",
)

_PATH_PARAM_PATTERNS = [
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE), "/{id}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


def normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record request count and latency per method and normalised path."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = normalise_path(path)

        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(status_code)).inc()
            HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(time.monotonic() - start)
