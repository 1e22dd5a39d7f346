"""Rate limit API endpoints.

GET  /api/v1/user/rate-limits        - The caller's configured limits and current quota
POST /api/v1/admin/rate-limit/reset  - Refill a caller's buckets (operator only)

The reset is idempotent: resetting an already-full bucket is a no-op
from the caller's point of view.
"""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from traffic_shaper.api.dependencies import Caller, get_caller, get_controller, require_admin
from traffic_shaper.core.rate_limit import AdmissionController, UnknownEndpointError
from traffic_shaper.core.tiers import RateLimitEndpoint, UserTier

log = structlog.get_logger(__name__)

router = APIRouter(tags=["rate-limits"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EndpointLimit(_CamelModel):
    description: str
    max_requests: int
    refill_rate: float
    refill_interval: int
    tier: UserTier
    available: bool
    remaining: int


class UserRateLimitsResponse(_CamelModel):
    user_id: str
    tier: UserTier
    limits: dict[str, EndpointLimit]


class ResetRateLimitRequest(_CamelModel):
    user_id: str = Field(min_length=1, max_length=256)
    endpoint: str = Field(min_length=1)
    tier: UserTier | None = None


class ResetRateLimitResponse(_CamelModel):
    success: bool = True
    user_id: str
    endpoint: RateLimitEndpoint
    tiers_reset: list[UserTier]
    reset_at: datetime


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/user/rate-limits",
    response_model=UserRateLimitsResponse,
    summary="Configured rate limits for the caller's tier",
)
async def get_user_rate_limits(
    caller: Caller = Depends(get_caller),
    controller: AdmissionController = Depends(get_controller),
) -> UserRateLimitsResponse:
    """Return limits for every endpoint, plus the quota left right now.

    Reading the quota does not consume any of it.
    """
    limits: dict[str, EndpointLimit] = {}
    for endpoint, described in controller.describe_limits(caller.tier).items():
        remaining = await controller.remaining(endpoint, caller.caller_id, caller.tier)
        limits[endpoint] = EndpointLimit(**described, remaining=remaining)

    log.info("rate_limit.api.limits_fetched", endpoint_count=len(limits))
    return UserRateLimitsResponse(user_id=caller.caller_id, tier=caller.tier, limits=limits)


@router.post(
    "/admin/rate-limit/reset",
    response_model=ResetRateLimitResponse,
    summary="Reset a caller's rate limit buckets (operator only)",
    dependencies=[Depends(require_admin)],
)
async def reset_rate_limit(
    body: ResetRateLimitRequest,
    controller: AdmissionController = Depends(get_controller),
) -> ResetRateLimitResponse:
    """Refill the caller's bucket for one tier, or for all tiers when none is given."""
    try:
        tiers = await controller.reset(body.endpoint, body.user_id, body.tier)
    except UnknownEndpointError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_ENDPOINT", "message": str(exc)},
        ) from exc

    return ResetRateLimitResponse(
        user_id=body.user_id.strip(),
        endpoint=RateLimitEndpoint(body.endpoint.strip().lower()),
        tiers_reset=tiers,
        reset_at=datetime.now(UTC),
    )
