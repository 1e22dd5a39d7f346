"""Model routing for paid model invocations.

This module picks a backend model per request from the caller tier's
allow-list, using a hybrid score of:
- Quality (static rating plus task-category boosts)
- Cost (relative to the priciest eligible model)
- Availability (live uptime, latency and queue depth)

The FallbackChain walks the resulting decision when a model call fails.
"""

from __future__ import annotations

from traffic_shaper.model_router.catalog import (
    DEFAULT_MODELS,
    TIER_MODELS,
    ModelConfig,
    RoutingConfigurationError,
    models_for_tier,
    validate_tier_table,
)
from traffic_shaper.model_router.classifier import KeywordTaskClassifier, TaskClassifier
from traffic_shaper.model_router.fallback import (
    AllModelsFailedError,
    FallbackChain,
    TransientModelError,
)
from traffic_shaper.model_router.router import (
    HybridRouter,
    InvalidRoutingContextError,
    NoEligibleModelsError,
    RoutingContext,
    RoutingDecision,
    create_routing_context,
)
from traffic_shaper.model_router.scoring import (
    AvailabilityThresholds,
    ModelHealth,
    ModelScore,
    ScoringWeights,
    parse_system_metrics,
)
from traffic_shaper.model_router.tokens import calculate_cost, estimate_tokens

__all__ = [
    "DEFAULT_MODELS",
    "TIER_MODELS",
    "AllModelsFailedError",
    "AvailabilityThresholds",
    "FallbackChain",
    "HybridRouter",
    "InvalidRoutingContextError",
    "KeywordTaskClassifier",
    "ModelConfig",
    "ModelHealth",
    "ModelScore",
    "NoEligibleModelsError",
    "RoutingConfigurationError",
    "RoutingContext",
    "RoutingDecision",
    "ScoringWeights",
    "TaskClassifier",
    "TransientModelError",
    "calculate_cost",
    "create_routing_context",
    "estimate_tokens",
    "models_for_tier",
    "parse_system_metrics",
    "validate_tier_table",
]
