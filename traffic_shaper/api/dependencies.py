"""FastAPI dependencies shared by the route modules.

Key dependencies:
- get_caller: Caller identity from the upstream auth layer's headers
- require_admin: Operator key check for the admin surface
- rate_limit: Dependency factory enforcing an endpoint's quota

Authentication itself happens upstream. By the time a request reaches this
service the gateway has set X-Caller-Id and X-Caller-Tier; both are still
treated as untrusted input and parsed at the boundary.
"""

from __future__ import annotations

import hmac
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog
from fastapi import Depends, Header, HTTPException, Request, Response, status

from traffic_shaper.config import Settings, get_settings
from traffic_shaper.core.rate_limit import AdmissionController, ConsumeResult, RateLimitExceeded
from traffic_shaper.core.tiers import RateLimitEndpoint, UserTier, parse_tier, validate_caller_id
from traffic_shaper.model_router.router import HybridRouter
from traffic_shaper.telemetry.logging import bind_caller_context

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Caller:
    """Validated caller identity for one request."""

    caller_id: str
    tier: UserTier


def get_controller(request: Request) -> AdmissionController:
    """AdmissionController built by the app lifespan."""
    return request.app.state.admission_controller


def get_router(request: Request) -> HybridRouter:
    """HybridRouter built by the app lifespan."""
    return request.app.state.model_router


async def get_caller(
    x_caller_id: str | None = Header(default=None, alias="X-Caller-Id"),
    x_caller_tier: str | None = Header(default=None, alias="X-Caller-Tier"),
) -> Caller:
    """Resolve the caller from gateway headers.

    Raises InvalidCallerIdError (mapped to HTTP 400) when the id is missing
    or malformed. An unknown tier resolves to FREE.
    """
    caller = Caller(caller_id=validate_caller_id(x_caller_id), tier=parse_tier(x_caller_tier))
    bind_caller_context(caller.caller_id, caller.tier.value)
    return caller


async def require_admin(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Assert the request carries the operator key.

    Raises HTTP 401 when the key is missing and 403 when it is wrong.
    """
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-Key header",
        )
    expected = settings.admin_api_key.get_secret_value()
    if not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        log.warning("admin.auth_failed")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )


def rate_limit(endpoint: RateLimitEndpoint) -> Callable[..., Awaitable[ConsumeResult]]:
    """Dependency factory that spends one request of the caller's quota.

    Usage:
        @router.post("/decision")
        async def decide(quota: ConsumeResult = Depends(rate_limit(RateLimitEndpoint.CHAT_SEND))):
            ...

    Allowed requests get X-RateLimit-* headers on the response; denied
    requests are rejected with HTTP 429 and Retry-After.
    """

    async def _check(
        response: Response,
        caller: Caller = Depends(get_caller),
        controller: AdmissionController = Depends(get_controller),
    ) -> ConsumeResult:
        result = await controller.check(endpoint, caller.caller_id, caller.tier)
        if not result.allowed:
            raise RateLimitExceeded(result, endpoint=endpoint.value, tier=caller.tier)
        for name, value in result.headers().items():
            response.headers[name] = value
        return result

    return _check
