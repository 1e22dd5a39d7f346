"""Model catalog and tier eligibility table.

Quality ratings:
- Claude 3.5 Sonnet: best for code, analysis, technical tasks (0.95)
- GPT-4o: versatile, good all-around (0.92)
- Gemini 2.0 Flash: fast, economical, multimodal (0.88)
- DeepSeek: budget alternative (0.85)

Cost per 1k tokens is the average of input and output list prices.

Tier eligibility:
- FREE: only the two economical models
- PRO / ENTERPRISE: every model
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from traffic_shaper.core.tiers import UserTier, parse_tier


class RoutingConfigurationError(ValueError):
    """The model catalog or tier table is inconsistent. Fatal at startup."""


@dataclass(frozen=True)
class ModelConfig:
    """Static description of one routable model.

    Attributes:
        model_id: Provider model identifier (e.g., "gpt-4o")
        provider: Provider identifier (e.g., "openai")
        quality: Base quality rating in [0, 1]
        cost_per_1k_tokens: Average USD price per 1,000 tokens
        avg_latency_ms: Typical latency, used as a static quality penalty
        capabilities: Task categories the model is known to excel at
        max_context_tokens: Context window size
        priority: Static tie-break order (lower wins)
    """

    model_id: str
    provider: str
    quality: float
    cost_per_1k_tokens: float
    avg_latency_ms: float
    capabilities: frozenset[str] = field(default_factory=frozenset)
    max_context_tokens: int = 128_000
    priority: int = 100

    def __post_init__(self) -> None:
        """Validate model config after initialization."""
        if not self.model_id:
            raise RoutingConfigurationError("model_id must not be empty")
        if not 0.0 <= self.quality <= 1.0:
            raise RoutingConfigurationError(f"{self.model_id}: quality must be in [0, 1]")
        if self.cost_per_1k_tokens < 0:
            raise RoutingConfigurationError(f"{self.model_id}: cost cannot be negative")
        if self.max_context_tokens < 1:
            raise RoutingConfigurationError(f"{self.model_id}: max_context_tokens must be positive")


DEFAULT_MODELS: dict[str, ModelConfig] = {
    model.model_id: model
    for model in (
        ModelConfig(
            model_id="claude-3.5-sonnet-20241022",
            provider="anthropic",
            quality=0.95,
            cost_per_1k_tokens=0.009,
            avg_latency_ms=800,
            capabilities=frozenset(
                {"code", "analysis", "reasoning", "long-context", "function-calling"}
            ),
            max_context_tokens=200_000,
            priority=1,
        ),
        ModelConfig(
            model_id="gpt-4o",
            provider="openai",
            quality=0.92,
            cost_per_1k_tokens=0.00625,
            avg_latency_ms=1200,
            capabilities=frozenset(
                {"general", "reasoning", "analysis", "creative", "function-calling", "vision"}
            ),
            max_context_tokens=128_000,
            priority=2,
        ),
        ModelConfig(
            model_id="gemini-2.0-flash",
            provider="google",
            quality=0.88,
            cost_per_1k_tokens=0.000375,
            avg_latency_ms=500,
            capabilities=frozenset({"fast", "multimodal", "vision", "general", "long-context"}),
            max_context_tokens=1_000_000,
            priority=3,
        ),
        ModelConfig(
            model_id="deepseek-chat",
            provider="deepseek",
            quality=0.85,
            cost_per_1k_tokens=0.00021,
            avg_latency_ms=1500,
            capabilities=frozenset({"general", "budget", "code"}),
            max_context_tokens=64_000,
            priority=4,
        ),
    )
}

_ALL_MODELS: tuple[str, ...] = (
    "claude-3.5-sonnet-20241022",
    "gpt-4o",
    "gemini-2.0-flash",
    "deepseek-chat",
)

TIER_MODELS: dict[UserTier, tuple[str, ...]] = {
    UserTier.FREE: ("gemini-2.0-flash", "deepseek-chat"),
    UserTier.PRO: _ALL_MODELS,
    UserTier.ENTERPRISE: _ALL_MODELS,
}


def models_for_tier(
    tier: UserTier | str | None,
    tier_models: Mapping[UserTier, Sequence[str]] = TIER_MODELS,
) -> tuple[str, ...]:
    """Allow-list of model ids for a tier. Unknown tiers get the FREE list."""
    return tuple(tier_models.get(parse_tier(tier), ()))


def validate_tier_table(
    catalog: Mapping[str, ModelConfig] = DEFAULT_MODELS,
    tier_models: Mapping[UserTier, Sequence[str]] = TIER_MODELS,
) -> None:
    """Check every tier has at least one model and references only catalog models.

    Raises:
        RoutingConfigurationError: On the first problem found.
    """
    for tier in UserTier:
        model_ids = tier_models.get(tier)
        if not model_ids:
            raise RoutingConfigurationError(f"Tier {tier.value} has no eligible models")
        unknown = [model_id for model_id in model_ids if model_id not in catalog]
        if unknown:
            raise RoutingConfigurationError(
                f"Tier {tier.value} references unknown models: {', '.join(unknown)}"
            )
