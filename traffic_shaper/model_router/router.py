"""Hybrid routing engine - picks a backend model per request.

Selection:
1. Eligibility: the caller tier's allow-list (unknown tiers get FREE's)
2. Score every eligible model on quality, cost and availability
3. Rank models whose context window holds the prompt first, then by final
   score, availability, static priority and id
4. The winner is selected; the next up-to-three models are fallbacks

The engine never calls a model. It only hands a RoutingDecision to the
invocation layer, which walks the fallbacks on transient failures
(see FallbackChain).
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from traffic_shaper.core.tiers import (
    InvalidCallerIdError,
    UserTier,
    parse_tier,
    validate_caller_id,
)
from traffic_shaper.middleware.prometheus import record_routing_decision
from traffic_shaper.model_router.catalog import (
    DEFAULT_MODELS,
    TIER_MODELS,
    ModelConfig,
    RoutingConfigurationError,
    models_for_tier,
)
from traffic_shaper.model_router.classifier import KeywordTaskClassifier, TaskClassifier
from traffic_shaper.model_router.scoring import (
    AvailabilityThresholds,
    ModelScore,
    ScoringWeights,
    SystemMetrics,
    score_model,
)
from traffic_shaper.model_router.tokens import calculate_cost, estimate_tokens

if TYPE_CHECKING:
    from traffic_shaper.config import Settings

log = structlog.get_logger(__name__)

MAX_FALLBACKS = 3


class InvalidRoutingContextError(InvalidCallerIdError):
    """The routing context is structurally invalid (bad caller id or estimate)."""


class NoEligibleModelsError(RoutingConfigurationError):
    """A tier resolved to no routable models. Indicates a broken tier table."""


@dataclass(frozen=True)
class RoutingContext:
    """Everything the engine knows about one request.

    Attributes:
        caller_id: Validated caller identifier
        tier: Parsed caller tier
        prompt: Prompt text (used for task classification only)
        request_id: Correlation id, generated when the caller has none
        estimated_tokens: Token estimate for cost and context-window checks
    """

    caller_id: str
    tier: UserTier
    prompt: str
    request_id: str
    estimated_tokens: int


def create_routing_context(
    caller_id: object,
    tier: UserTier | str | None,
    prompt: str | None,
    request_id: str | None = None,
    estimated_tokens: int | None = None,
) -> RoutingContext:
    """Build a RoutingContext from untrusted request data.

    Raises:
        InvalidRoutingContextError: If the caller id is empty or malformed,
            or the token estimate is negative.
    """
    try:
        caller = validate_caller_id(caller_id)
    except InvalidCallerIdError as exc:
        raise InvalidRoutingContextError(str(exc)) from exc

    text = prompt or ""
    if estimated_tokens is None:
        estimated_tokens = estimate_tokens(text)
    elif estimated_tokens < 0:
        raise InvalidRoutingContextError("estimated_tokens cannot be negative")

    return RoutingContext(
        caller_id=caller,
        tier=parse_tier(tier),
        prompt=text,
        request_id=request_id or str(uuid.uuid4()),
        estimated_tokens=int(estimated_tokens),
    )


@dataclass(frozen=True)
class RoutingDecision:
    """Selected model, its scores and the ordered fallbacks."""

    selected_model: str
    provider: str
    scores: ModelScore
    fallbacks: tuple[str, ...]
    reasoning: str
    request_id: str
    tier: UserTier
    estimated_tokens: int
    estimated_cost_usd: float
    ranking: tuple[ModelScore, ...] = field(default=(), repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "selectedModel": self.selected_model,
            "provider": self.provider,
            "scores": self.scores.to_dict(),
            "fallbacks": list(self.fallbacks),
            "reasoning": self.reasoning,
            "requestId": self.request_id,
            "tier": self.tier.value,
            "estimatedTokens": self.estimated_tokens,
            "estimatedCostUsd": self.estimated_cost_usd,
        }


def _rank_key(
    score: ModelScore, model: ModelConfig, fits: bool
) -> tuple[bool, float, float, int, str]:
    # Models too small for the prompt sort after every model that fits.
    return (not fits, -score.final, -score.availability, model.priority, model.model_id)


class HybridRouter:
    """Scores the tier's eligible models and picks the best one.

    Stateless apart from its configuration; safe to share between
    concurrent requests.
    """

    def __init__(
        self,
        catalog: Mapping[str, ModelConfig] = DEFAULT_MODELS,
        tier_models: Mapping[UserTier, Sequence[str]] = TIER_MODELS,
        weights: ScoringWeights | None = None,
        thresholds: AvailabilityThresholds | None = None,
        classifier: TaskClassifier | None = None,
    ) -> None:
        self._catalog = catalog
        self._tier_models = tier_models
        self._weights = weights or ScoringWeights()
        self._thresholds = thresholds or AvailabilityThresholds()
        self._classifier = classifier or KeywordTaskClassifier()

        log.info(
            "model_router.initialized",
            models=sorted(catalog),
            tiers={tier.value: list(models) for tier, models in tier_models.items()},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> HybridRouter:
        return cls(
            weights=ScoringWeights.from_settings(settings),
            thresholds=AvailabilityThresholds.from_settings(settings),
        )

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    def eligible_models(self, tier: UserTier | str | None) -> list[ModelConfig]:
        """Catalog entries on the tier's allow-list, in allow-list order."""
        return [
            self._catalog[model_id]
            for model_id in models_for_tier(tier, self._tier_models)
            if model_id in self._catalog
        ]

    def route_to_model(
        self,
        context: RoutingContext,
        metrics: SystemMetrics | None = None,
    ) -> RoutingDecision:
        """Select a model and fallbacks for the request.

        Missing or partial metrics fall back to the default availability
        score; they never make routing fail.

        Raises:
            NoEligibleModelsError: If the tier table yields no models.
        """
        tier = parse_tier(context.tier)
        eligible = self.eligible_models(tier)
        if not eligible:
            log.error("model_router.no_eligible_models", tier=tier.value)
            raise NoEligibleModelsError(f"No eligible models for tier {tier.value}")

        fitting = {
            m.model_id for m in eligible if m.max_context_tokens >= context.estimated_tokens
        }
        context_limited = bool(fitting) and len(fitting) < len(eligible)
        if not fitting:
            # Nothing holds the prompt: rank on score alone.
            fitting = {m.model_id for m in eligible}

        categories = self._classifier.classify(context.prompt)
        max_price = max(model.cost_per_1k_tokens for model in eligible)

        scored = [
            (
                score_model(
                    model,
                    categories=categories,
                    max_price=max_price,
                    metrics=metrics,
                    weights=self._weights,
                    thresholds=self._thresholds,
                ),
                model,
            )
            for model in eligible
        ]
        scored.sort(key=lambda pair: _rank_key(*pair, pair[1].model_id in fitting))

        best, best_model = scored[0]
        fallbacks = tuple(score.model_id for score, _ in scored[1 : 1 + MAX_FALLBACKS])

        decision = RoutingDecision(
            selected_model=best.model_id,
            provider=best_model.provider,
            scores=best,
            fallbacks=fallbacks,
            reasoning=self._reasoning(best, tier, categories, context_limited),
            request_id=context.request_id,
            tier=tier,
            estimated_tokens=context.estimated_tokens,
            estimated_cost_usd=calculate_cost(
                context.estimated_tokens, best_model.cost_per_1k_tokens
            ),
            ranking=tuple(score for score, _ in scored),
        )

        record_routing_decision(tier.value, best.model_id)
        log.info(
            "model_router.route_selected",
            request_id=context.request_id,
            caller_id=context.caller_id,
            tier=tier.value,
            model_id=best.model_id,
            final_score=round(best.final, 4),
            fallbacks=list(fallbacks),
            categories=sorted(categories),
            metrics_reported=len(metrics) if metrics else 0,
        )
        return decision

    def _dominant_factor(self, score: ModelScore) -> str:
        contributions = {
            "quality": self._weights.quality * score.quality,
            "cost": self._weights.cost * score.cost,
            "availability": self._weights.availability * score.availability,
        }
        # max() keeps the first key on ties, so the order above is the tie-break.
        return max(contributions, key=contributions.__getitem__)

    def _reasoning(
        self,
        score: ModelScore,
        tier: UserTier,
        categories: frozenset[str],
        context_limited: bool,
    ) -> str:
        parts = [f"Selected {score.model_id} mainly on {self._dominant_factor(score)}"]

        if score.quality > 0.9:
            parts.append("High-quality model selected for best results")
        elif score.quality < 0.7:
            parts.append("Budget model selected to optimize cost")

        if score.cost > 0.8:
            parts.append("Cost-efficient option")
        elif score.cost < 0.5:
            parts.append("Higher cost justified by quality/requirements")

        if categories:
            parts.append(f"Task looks like {', '.join(sorted(categories))}")
        if context_limited:
            parts.append("Models with too small a context window were ranked last")

        if tier is UserTier.FREE:
            parts.append("Free tier constraints applied")
        elif tier is UserTier.ENTERPRISE:
            parts.append("Enterprise tier - all models available")

        return ". ".join(parts)
