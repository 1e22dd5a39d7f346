"""Middleware package for request processing.

This package contains:
- PrometheusMiddleware: Prometheus metrics export
"""

from __future__ import annotations

from traffic_shaper.middleware.prometheus import (
    PrometheusMiddleware,
    get_metrics,
    record_http_request,
    record_rate_limit_decision,
    record_routing_decision,
    record_storage_fallback,
)

__all__ = [
    "PrometheusMiddleware",
    "get_metrics",
    "record_http_request",
    "record_rate_limit_decision",
    "record_routing_decision",
    "record_storage_fallback",
]
