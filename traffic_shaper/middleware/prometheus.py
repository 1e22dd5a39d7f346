"""Prometheus metrics endpoint and instrumentation.

Exports metrics in Prometheus exposition format for scraping.

Metrics exported:
- http_requests_total: Counter of HTTP requests by method, endpoint, status
- http_request_duration_seconds: Histogram of HTTP request latencies
- rate_limit_decisions_total: Counter of admission decisions by endpoint, tier, outcome
- rate_limit_storage_fallbacks_total: Counter of bucket store failovers by operation
- routing_decisions_total: Counter of routing selections by tier and model
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog
from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

log = structlog.get_logger(__name__)


# Create custom registry to avoid conflicts with other prometheus exporters
REGISTRY = CollectorRegistry(auto_describe=True)

# Endpoint label for requests that matched no route.
UNMATCHED_ENDPOINT = "other"


# ------------------------------------------------------------------ #
# HTTP Metrics
# ------------------------------------------------------------------ #

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=REGISTRY,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Admission / Routing Metrics
# ------------------------------------------------------------------ #

rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Admission control decisions",
    ["endpoint", "tier", "outcome"],
    registry=REGISTRY,
)

rate_limit_storage_fallbacks_total = Counter(
    "rate_limit_storage_fallbacks_total",
    "Bucket store operations served by the in-process fallback",
    ["operation"],
    registry=REGISTRY,
)

routing_decisions_total = Counter(
    "routing_decisions_total",
    "Model routing selections",
    ["tier", "model"],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Instrumentation Functions
# ------------------------------------------------------------------ #


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=str(status_code),
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
    ).observe(duration_seconds)


def record_rate_limit_decision(endpoint: str, tier: str, allowed: bool) -> None:
    rate_limit_decisions_total.labels(
        endpoint=endpoint,
        tier=tier,
        outcome="allowed" if allowed else "denied",
    ).inc()


def record_storage_fallback(operation: str) -> None:
    rate_limit_storage_fallbacks_total.labels(operation=operation).inc()


def record_routing_decision(tier: str, model: str) -> None:
    routing_decisions_total.labels(tier=tier, model=model).inc()


# ------------------------------------------------------------------ #
# Middleware
# ------------------------------------------------------------------ #


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware that records HTTP request metrics for Prometheus."""

    @staticmethod
    def _endpoint_label(request: Request) -> str:
        # Label by route template; unmatched paths share one series.
        route = request.scope.get("route")
        return getattr(route, "path", None) or UNMATCHED_ENDPOINT

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics for Prometheus endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            record_http_request(
                method=request.method,
                endpoint=self._endpoint_label(request),
                status_code=500,
                duration_seconds=time.perf_counter() - start_time,
            )
            raise

        record_http_request(
            method=request.method,
            endpoint=self._endpoint_label(request),
            status_code=response.status_code,
            duration_seconds=time.perf_counter() - start_time,
        )
        return response


# ------------------------------------------------------------------ #
# Metrics Endpoint
# ------------------------------------------------------------------ #


def get_metrics() -> Response:
    """Generate Prometheus metrics in exposition format."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
        status_code=200,
    )
