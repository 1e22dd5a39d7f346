"""Model routing API endpoint.

POST /api/v1/routing/decision - Pick a model and fallbacks for a prompt

Quota is spent from the caller's chat:send bucket, since every decision
precedes a paid model call. Live metrics are optional; without them each
model gets the default availability score.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from traffic_shaper.api.dependencies import Caller, get_caller, get_router, rate_limit
from traffic_shaper.core.tiers import RateLimitEndpoint, UserTier
from traffic_shaper.model_router.router import HybridRouter, create_routing_context
from traffic_shaper.model_router.scoring import parse_system_metrics

router = APIRouter(prefix="/routing", tags=["routing"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RoutingDecisionRequest(_CamelModel):
    prompt: str = ""
    request_id: str | None = Field(default=None, max_length=128)
    estimated_tokens: int | None = Field(default=None, ge=0)
    # model id -> {uptime, currentLatency, queueDepth}; malformed entries are ignored
    metrics: dict[str, Any] | None = None


class ScoreBreakdown(BaseModel):
    quality: float
    cost: float
    availability: float
    final: float


class RoutingDecisionResponse(_CamelModel):
    selected_model: str
    provider: str
    scores: ScoreBreakdown
    fallbacks: list[str]
    reasoning: str
    request_id: str
    tier: UserTier
    estimated_tokens: int
    estimated_cost_usd: float


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/decision",
    response_model=RoutingDecisionResponse,
    summary="Select a model for a prompt",
    dependencies=[Depends(rate_limit(RateLimitEndpoint.CHAT_SEND))],
)
async def route_decision(
    body: RoutingDecisionRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    model_router: HybridRouter = Depends(get_router),
) -> RoutingDecisionResponse:
    """Score the caller tier's models and return the winner with fallbacks."""
    context = create_routing_context(
        caller.caller_id,
        caller.tier,
        body.prompt,
        request_id=body.request_id or getattr(request.state, "request_id", None),
        estimated_tokens=body.estimated_tokens,
    )
    decision = model_router.route_to_model(context, parse_system_metrics(body.metrics))
    return RoutingDecisionResponse.model_validate(decision.to_dict())
