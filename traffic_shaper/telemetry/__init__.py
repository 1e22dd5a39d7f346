"""Telemetry package for observability.

This package contains:
- Structured logging with request correlation
- Prometheus metrics (in traffic_shaper/middleware/prometheus.py)
"""

from __future__ import annotations

from traffic_shaper.telemetry.logging import (
    RequestIdMiddleware,
    bind_caller_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_caller_context",
    "clear_context",
    "configure_logging",
]
