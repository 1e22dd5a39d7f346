"""Health check endpoints.

/health/live   - Liveness check: is the process up?
/health/ready  - Readiness check: are the limiter and router built?

A degraded bucket store (Redis down, serving from memory) still reports
ready: admission control keeps working, only less globally accurate.

These are public endpoints - no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict:
    """Liveness check - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(request: Request) -> Any:
    """Readiness check - reports the bucket store backend and its state."""
    store = getattr(request.app.state, "bucket_store", None)
    if store is None:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "timestamp": datetime.now(UTC).isoformat()},
        )

    info = await store.info()
    return {
        "status": "degraded" if info.get("degraded") else "ready",
        "bucket_store": info,
        "timestamp": datetime.now(UTC).isoformat(),
    }
