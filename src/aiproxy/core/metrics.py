"""Prometheus metrics for the proxy.

Admission-control and upstream metrics, plus a small HTTP middleware
for request counts and latency.  Everything lives in the default
``prometheus_client`` registry and is served from ``/metrics``.

All metrics use the ``aiproxy_`` prefix.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable

from fastapi import FastAPI
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Match
from starlette.types import ASGIApp

from aiproxy.configs.config import AppConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "aiproxy_rate_limit_rejections_total",
    "Total token-bucket rejections (429 responses)",
    ["stage"],  # "admission" | "recheck"
)

BUCKETS_TRACKED = Gauge(
    "aiproxy_buckets_tracked",
    "Client buckets currently held in process memory",
)

BUCKETS_EVICTED_TOTAL = Counter(
    "aiproxy_buckets_evicted_total",
    "Idle client buckets dropped by the sweep",
)

# ---------------------------------------------------------------------------
# Concurrency gate
# ---------------------------------------------------------------------------

GATE_ACTIVE = Gauge(
    "aiproxy_gate_active",
    "Requests currently holding a concurrency slot",
)

GATE_QUEUED = Gauge(
    "aiproxy_gate_queued",
    "Requests parked waiting for a concurrency slot",
)

GATE_REJECTIONS_TOTAL = Counter(
    "aiproxy_gate_rejections_total",
    "Total concurrency-gate rejections (429 responses)",
    ["reason"],  # "queue_full" | "queue_timeout"
)

GATE_WAIT_SECONDS = Histogram(
    "aiproxy_gate_wait_seconds",
    "Time spent waiting for a concurrency slot",
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30),
)

# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------

UPSTREAM_ATTEMPTS_TOTAL = Counter(
    "aiproxy_upstream_attempts_total",
    "Upstream HTTP attempts by outcome",
    ["provider", "outcome"],  # "ok" | "retryable" | "client_error" | "network_error"
)

UPSTREAM_RETRIES_TOTAL = Counter(
    "aiproxy_upstream_retries_total",
    "Backoff sleeps taken before retrying the upstream",
    ["provider"],
)

UPSTREAM_LATENCY_SECONDS = Histogram(
    "aiproxy_upstream_latency_seconds",
    "Latency of a single upstream attempt",
    ["provider"],
    buckets=(0.25, 0.5, 1, 2, 5, 10, 20, 30, 60),
)

UPSTREAM_FAILURES_TOTAL = Counter(
    "aiproxy_upstream_failures_total",
    "Requests answered with 502 after exhausting retries",
    ["provider"],
)

# ---------------------------------------------------------------------------
# HTTP boundary
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "aiproxy_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "aiproxy_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "aiproxy_http_requests_in_progress",
    "HTTP requests currently being served",
)

INTERNAL_ERRORS_TOTAL = Counter(
    "aiproxy_internal_errors_total",
    "Requests answered with 500",
    ["kind"],  # "missing_credential" | "unhandled"
)

METRICS_PATH = "/metrics"
UNMATCHED_PATH = "unmatched"


def route_template(request: Request) -> str:
    """Path template of the route serving *request*.

    Labels stay bounded by the route table: any path with no route at
    all is reported as ``unmatched``.
    """
    partial: str | None = None
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", UNMATCHED_PATH)
        if match == Match.PARTIAL and partial is None:
            partial = getattr(route, "path", UNMATCHED_PATH)
    return partial or UNMATCHED_PATH


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics, skipping ``excluded_paths``."""

    def __init__(self, app: ASGIApp, excluded_paths: Iterable[str] = ()) -> None:
        super().__init__(app)
        self._excluded = frozenset(excluded_paths)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = route_template(request)
        if path in self._excluded:
            return await call_next(request)

        method = request.method
        status = 500
        HTTP_REQUESTS_IN_PROGRESS.inc()
        start = time.perf_counter()
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            HTTP_REQUESTS_IN_PROGRESS.dec()
            HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status=status).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(
                time.perf_counter() - start
            )


async def metrics_endpoint() -> Response:
    """Prometheus text exposition of the default registry."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def instrument_app(app: FastAPI, config: AppConfig) -> None:
    """Attach the HTTP middleware and expose ``/metrics``.

    Must run before the app starts serving: middleware cannot be added
    afterwards.
    """
    if not config.metrics.enabled:
        return
    app.add_middleware(
        PrometheusMiddleware, excluded_paths=config.metrics.excluded_handlers
    )
    app.add_api_route(
        METRICS_PATH,
        metrics_endpoint,
        methods=["GET"],
        include_in_schema=False,
    )
    logger.info("Prometheus metrics exposed at %s", METRICS_PATH)
