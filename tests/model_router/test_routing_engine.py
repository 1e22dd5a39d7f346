"""Tests for HybridRouter model selection."""

from __future__ import annotations

import pytest

from traffic_shaper.config import Environment, Settings
from traffic_shaper.core.tiers import InvalidCallerIdError, UserTier
from traffic_shaper.middleware.prometheus import REGISTRY
from traffic_shaper.model_router.catalog import (
    DEFAULT_MODELS,
    TIER_MODELS,
    ModelConfig,
    RoutingConfigurationError,
)
from traffic_shaper.model_router.router import (
    MAX_FALLBACKS,
    HybridRouter,
    InvalidRoutingContextError,
    NoEligibleModelsError,
    RoutingContext,
    create_routing_context,
)
from traffic_shaper.model_router.scoring import ModelHealth, ScoringWeights

FREE_MODELS = {"gemini-2.0-flash", "deepseek-chat"}


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture
def router() -> HybridRouter:
    return HybridRouter()


def _context(tier="FREE", prompt="Hello", **kwargs) -> RoutingContext:
    return create_routing_context("user-123", tier, prompt, **kwargs)


def _model(model_id: str, **overrides) -> ModelConfig:
    values = {
        "provider": "test",
        "quality": 0.9,
        "cost_per_1k_tokens": 0.001,
        "avg_latency_ms": 500,
    }
    values.update(overrides)
    return ModelConfig(model_id=model_id, **values)


def _routed(tier: str, model: str) -> float:
    return (
        REGISTRY.get_sample_value("routing_decisions_total", {"tier": tier, "model": model})
        or 0.0
    )


# ------------------------------------------------------------------ #
# create_routing_context
# ------------------------------------------------------------------ #


class TestCreateRoutingContext:
    def test_normalises_fields(self):
        context = create_routing_context(" user-1 ", "pro", "Hello world")
        assert context.caller_id == "user-1"
        assert context.tier is UserTier.PRO
        assert context.estimated_tokens == 3  # ceil(11 / 4)
        assert context.request_id

    def test_generates_unique_request_ids(self):
        assert _context().request_id != _context().request_id

    def test_keeps_supplied_request_id_and_estimate(self):
        context = _context(request_id="req-1", estimated_tokens=500)
        assert context.request_id == "req-1"
        assert context.estimated_tokens == 500

    def test_none_prompt_is_empty(self):
        context = create_routing_context("user-1", "FREE", None)
        assert context.prompt == ""
        assert context.estimated_tokens == 0

    @pytest.mark.parametrize("caller_id", ["", "   ", None, "a b", "x" * 257])
    def test_invalid_caller_rejected(self, caller_id):
        with pytest.raises(InvalidRoutingContextError):
            create_routing_context(caller_id, "FREE", "Hello")

    def test_invalid_context_is_an_invalid_caller_error(self):
        with pytest.raises(InvalidCallerIdError):
            create_routing_context("", "FREE", "Hello")

    def test_negative_estimate_rejected(self):
        with pytest.raises(InvalidRoutingContextError):
            _context(estimated_tokens=-1)


# ------------------------------------------------------------------ #
# Tier eligibility
# ------------------------------------------------------------------ #


class TestEligibility:
    def test_free_tier_only_economical_models(self, router):
        decision = router.route_to_model(_context("FREE"))
        assert decision.selected_model in FREE_MODELS
        assert set(decision.fallbacks) <= FREE_MODELS

    @pytest.mark.parametrize(
        "prompt",
        ["Hello", "Debug this python function", "Write a poem", "Analyze this report" * 200],
    )
    def test_free_tier_never_gets_premium_models(self, router, prompt):
        decision = router.route_to_model(_context("FREE", prompt))
        assert {decision.selected_model, *decision.fallbacks} <= FREE_MODELS

    def test_unknown_tier_gets_free_models(self, router):
        decision = router.route_to_model(_context("PLATINUM"))
        assert decision.tier is UserTier.FREE
        assert decision.selected_model in FREE_MODELS

    def test_pro_tier_ranks_every_model(self, router):
        decision = router.route_to_model(_context("PRO"))
        assert len(decision.ranking) == 4
        assert len(decision.fallbacks) == MAX_FALLBACKS

    def test_eligible_models_follow_allow_list(self, router):
        assert [m.model_id for m in router.eligible_models("FREE")] == list(
            TIER_MODELS[UserTier.FREE]
        )


# ------------------------------------------------------------------ #
# Selection
# ------------------------------------------------------------------ #


class TestSelection:
    def test_free_hello_prefers_cheapest(self, router):
        decision = router.route_to_model(_context("FREE", "Hello"))
        assert decision.selected_model == "deepseek-chat"
        assert decision.provider == "deepseek"
        assert decision.fallbacks == ("gemini-2.0-flash",)

    def test_pro_hello_prefers_gemini(self, router):
        decision = router.route_to_model(_context("PRO", "Hello"))
        assert decision.selected_model == "gemini-2.0-flash"
        assert decision.fallbacks == ("deepseek-chat", "gpt-4o", "claude-3.5-sonnet-20241022")

    def test_code_prompt_boosts_code_capable_models(self, router):
        decision = router.route_to_model(_context("PRO", "Please debug this python function"))
        assert decision.selected_model == "deepseek-chat"
        assert decision.scores.quality == pytest.approx(0.95)

    def test_final_score_is_weighted_sum(self, router):
        decision = router.route_to_model(_context("ENTERPRISE", "Explain quantum computing"))
        for score in decision.ranking:
            for value in (score.quality, score.cost, score.availability, score.final):
                assert 0.0 <= value <= 1.0
            assert score.final == pytest.approx(
                0.4 * score.quality + 0.3 * score.cost + 0.3 * score.availability
            )

    def test_ranking_is_sorted_by_final_score(self, router):
        decision = router.route_to_model(_context("PRO", "Hello"))
        finals = [score.final for score in decision.ranking]
        assert finals == sorted(finals, reverse=True)
        assert decision.scores is decision.ranking[0]

    def test_without_metrics_availability_is_default(self, router):
        decision = router.route_to_model(_context("PRO"), metrics=None)
        assert all(score.availability == 0.8 for score in decision.ranking)

    def test_unhealthy_model_loses_selection(self, router):
        metrics = {
            "gemini-2.0-flash": ModelHealth(
                uptime_ratio=0.5, current_latency_ms=4000, queue_depth=200
            )
        }
        decision = router.route_to_model(_context("PRO", "Hello"), metrics=metrics)
        assert decision.selected_model == "deepseek-chat"
        gemini = next(s for s in decision.ranking if s.model_id == "gemini-2.0-flash")
        assert gemini.availability == pytest.approx(0.25)

    def test_custom_weights(self):
        router = HybridRouter(weights=ScoringWeights(quality=1.0, cost=0.0, availability=0.0))
        decision = router.route_to_model(_context("PRO", "Hello"))
        assert decision.selected_model == "claude-3.5-sonnet-20241022"

    def test_from_settings(self):
        settings = Settings(
            environment=Environment.TEST,
            routing_weight_quality=1.0,
            routing_weight_cost=0.0,
            routing_weight_availability=0.0,
            routing_default_availability=0.5,
        )
        router = HybridRouter.from_settings(settings)
        decision = router.route_to_model(_context("PRO"))
        assert router.weights.quality == 1.0
        assert decision.scores.availability == 0.5

    def test_decision_is_counted(self, router):
        before = _routed("FREE", "deepseek-chat")
        router.route_to_model(_context("FREE", "Hello"))
        assert _routed("FREE", "deepseek-chat") == before + 1


# ------------------------------------------------------------------ #
# Ties
# ------------------------------------------------------------------ #


class TestTieBreaks:
    def test_priority_breaks_ties(self):
        catalog = {
            "model-a": _model("model-a", priority=2),
            "model-b": _model("model-b", priority=1),
        }
        router = HybridRouter(catalog, {tier: ("model-a", "model-b") for tier in UserTier})
        assert router.route_to_model(_context()).selected_model == "model-b"

    def test_model_id_breaks_remaining_ties(self):
        catalog = {"model-z": _model("model-z"), "model-a": _model("model-a")}
        router = HybridRouter(catalog, {tier: ("model-z", "model-a") for tier in UserTier})
        decision = router.route_to_model(_context())
        assert decision.selected_model == "model-a"
        assert decision.fallbacks == ("model-z",)

    def test_availability_breaks_ties_before_priority(self):
        # Same final score: b trades quality for availability.
        catalog = {
            "model-a": _model("model-a", quality=0.75, priority=1),
            "model-b": _model("model-b", quality=0.5, priority=2),
        }
        router = HybridRouter(
            catalog,
            {tier: ("model-a", "model-b") for tier in UserTier},
            weights=ScoringWeights(quality=0.5, cost=0.0, availability=0.5),
        )
        metrics = {"model-a": ModelHealth(uptime_ratio=0.5), "model-b": ModelHealth()}
        decision = router.route_to_model(_context(), metrics=metrics)
        assert decision.ranking[0].final == decision.ranking[1].final == 0.75
        assert decision.selected_model == "model-b"

    def test_routing_is_deterministic(self, router):
        context = _context("ENTERPRISE", "Compare these two designs", request_id="r")
        first = router.route_to_model(context)
        second = router.route_to_model(context)
        assert first.to_dict() == second.to_dict()


# ------------------------------------------------------------------ #
# Context window
# ------------------------------------------------------------------ #


class TestContextWindow:
    def test_small_context_models_are_ranked_last(self, router):
        decision = router.route_to_model(_context("FREE", estimated_tokens=100_000))
        assert decision.selected_model == "gemini-2.0-flash"
        assert decision.fallbacks == ("deepseek-chat",)
        assert "context window were ranked last" in decision.reasoning

    def test_small_context_model_trails_every_fitting_model(self, router):
        # deepseek-chat outscores gpt-4o and claude on "Hello" but has a 64k window.
        decision = router.route_to_model(_context("PRO", estimated_tokens=100_000))
        assert decision.selected_model == "gemini-2.0-flash"
        assert decision.fallbacks == ("gpt-4o", "claude-3.5-sonnet-20241022", "deepseek-chat")

    def test_multi_model_tier_always_has_a_fallback(self, router):
        for tokens in (0, 70_000, 150_000, 500_000, 5_000_000):
            for tier in UserTier:
                decision = router.route_to_model(_context(tier, estimated_tokens=tokens))
                assert len(decision.fallbacks) >= 1

    def test_ranking_unchanged_when_nothing_fits(self, router):
        decision = router.route_to_model(_context("FREE", estimated_tokens=5_000_000))
        assert decision.selected_model == "deepseek-chat"
        assert "context window" not in decision.reasoning

    def test_long_prompt_still_routes(self, router):
        decision = router.route_to_model(_context("PRO", "word " * 50_000))
        assert decision.estimated_tokens == 62_500
        assert decision.selected_model in DEFAULT_MODELS


# ------------------------------------------------------------------ #
# Decision contents
# ------------------------------------------------------------------ #


class TestDecision:
    def test_reasoning_for_free_hello(self, router):
        decision = router.route_to_model(_context("FREE", "Hello"))
        assert decision.reasoning.startswith("Selected deepseek-chat mainly on quality")
        assert "Higher cost justified by quality/requirements" in decision.reasoning
        assert decision.reasoning.endswith("Free tier constraints applied")

    def test_reasoning_mentions_task_and_tier(self, router):
        decision = router.route_to_model(_context("ENTERPRISE", "Fix this SQL bug"))
        assert "Task looks like code" in decision.reasoning
        assert "Enterprise tier - all models available" in decision.reasoning

    def test_estimated_cost(self, router):
        decision = router.route_to_model(_context("FREE", estimated_tokens=10_000))
        assert decision.estimated_cost_usd == pytest.approx(0.0021)

    def test_request_id_is_carried(self, router):
        assert router.route_to_model(_context(request_id="req-42")).request_id == "req-42"

    def test_to_dict(self, router):
        data = router.route_to_model(_context("FREE", request_id="req-1")).to_dict()
        assert set(data) == {
            "selectedModel",
            "provider",
            "scores",
            "fallbacks",
            "reasoning",
            "requestId",
            "tier",
            "estimatedTokens",
            "estimatedCostUsd",
        }
        assert data["tier"] == "FREE"
        assert set(data["scores"]) == {"quality", "cost", "availability", "final"}


# ------------------------------------------------------------------ #
# Configuration errors
# ------------------------------------------------------------------ #


class TestNoEligibleModels:
    def test_empty_tier_raises(self):
        router = HybridRouter(tier_models={UserTier.FREE: ()})
        with pytest.raises(NoEligibleModelsError):
            router.route_to_model(_context("FREE"))

    def test_unknown_model_ids_raise(self):
        router = HybridRouter(tier_models={tier: ("missing-model",) for tier in UserTier})
        with pytest.raises(RoutingConfigurationError):
            router.route_to_model(_context("PRO"))
