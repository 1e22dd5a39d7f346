"""Hybrid model scoring: quality, cost and availability.

Scoring formula (default weights):
    final = 0.4 * quality + 0.3 * cost + 0.3 * availability

Every sub-score is clamped to [0, 1] and the weights are non-negative and
sum to 1, so ``final`` is in [0, 1] as well.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from traffic_shaper.model_router.catalog import ModelConfig
from traffic_shaper.model_router.classifier import DEFAULT_CATEGORY_BOOSTS

if TYPE_CHECKING:
    from traffic_shaper.config import Settings

log = structlog.get_logger(__name__)

# Models whose typical latency exceeds this lose some quality score.
SLOW_MODEL_LATENCY_MS = 2000
SLOW_MODEL_PENALTY = 0.1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class ScoringWeights:
    """Relative weight of each sub-score in the final score."""

    quality: float = 0.4
    cost: float = 0.3
    availability: float = 0.3

    def __post_init__(self) -> None:
        if min(self.quality, self.cost, self.availability) < 0:
            raise ValueError("Scoring weights cannot be negative")
        total = self.quality + self.cost + self.availability
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.6f}")

    @classmethod
    def from_settings(cls, settings: Settings) -> ScoringWeights:
        return cls(
            quality=settings.routing_weight_quality,
            cost=settings.routing_weight_cost,
            availability=settings.routing_weight_availability,
        )

    def combine(self, quality: float, cost: float, availability: float) -> float:
        return self.quality * quality + self.cost * cost + self.availability * availability


@dataclass(frozen=True)
class AvailabilityThresholds:
    """Penalty thresholds applied to live metrics."""

    latency_warn_ms: float = 1500
    latency_critical_ms: float = 3000
    queue_depth: int = 100
    default_score: float = 0.8

    @classmethod
    def from_settings(cls, settings: Settings) -> AvailabilityThresholds:
        return cls(
            latency_warn_ms=settings.routing_latency_warn_ms,
            latency_critical_ms=settings.routing_latency_critical_ms,
            queue_depth=settings.routing_queue_depth_threshold,
            default_score=settings.routing_default_availability,
        )


@dataclass(frozen=True)
class ModelHealth:
    """Live health snapshot for one model, as reported by the metrics poller."""

    uptime_ratio: float = 1.0
    current_latency_ms: float = 0.0
    queue_depth: int = 0


SystemMetrics = Mapping[str, ModelHealth]

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "uptime_ratio": ("uptime_ratio", "uptimeRatio", "uptime"),
    "current_latency_ms": ("current_latency_ms", "currentLatencyMs", "currentLatency"),
    "queue_depth": ("queue_depth", "queueDepth"),
}


def parse_system_metrics(raw: Mapping[str, Any] | None) -> dict[str, ModelHealth]:
    """Build SystemMetrics from plain dicts (snake_case or camelCase keys).

    Malformed entries are skipped, which leaves that model on the default
    availability score. Missing fields within an entry carry no penalty.
    """
    metrics: dict[str, ModelHealth] = {}
    if not raw:
        return metrics
    for model_id, entry in raw.items():
        if isinstance(entry, ModelHealth):
            metrics[model_id] = entry
            continue
        if not isinstance(entry, Mapping):
            log.debug("scoring.metrics_entry_skipped", model_id=model_id)
            continue
        values: dict[str, Any] = {}
        for field_name, aliases in _FIELD_ALIASES.items():
            for alias in aliases:
                if entry.get(alias) is not None:
                    values[field_name] = entry[alias]
                    break
        if not values:
            continue
        try:
            uptime = float(values.get("uptime_ratio", 1.0))
            latency = float(values.get("current_latency_ms", 0.0))
            depth = float(values.get("queue_depth", 0))
        except (TypeError, ValueError):
            log.debug("scoring.metrics_entry_skipped", model_id=model_id)
            continue
        # JSON bodies may carry Infinity, NaN or 1e999.
        if not all(math.isfinite(v) for v in (uptime, latency, depth)):
            log.debug("scoring.metrics_entry_skipped", model_id=model_id)
            continue
        metrics[model_id] = ModelHealth(
            uptime_ratio=uptime,
            current_latency_ms=latency,
            queue_depth=int(depth),
        )
    return metrics


@dataclass(frozen=True)
class ModelScore:
    """Score breakdown for one model."""

    model_id: str
    quality: float
    cost: float
    availability: float
    final: float

    def to_dict(self) -> dict[str, float]:
        return {
            "quality": self.quality,
            "cost": self.cost,
            "availability": self.availability,
            "final": self.final,
        }


def quality_score(
    model: ModelConfig,
    categories: frozenset[str],
    boosts: Mapping[str, tuple[frozenset[str], float]] = DEFAULT_CATEGORY_BOOSTS,
) -> float:
    """Base quality plus task-category boosts, minus the slow-model penalty."""
    score = model.quality
    for category in categories:
        boost = boosts.get(category)
        if boost is not None and boost[0] & model.capabilities:
            score += boost[1]
    if model.avg_latency_ms > SLOW_MODEL_LATENCY_MS:
        score -= SLOW_MODEL_PENALTY
    return _clamp(score)


def cost_score(model: ModelConfig, max_price: float) -> float:
    """Inverse price relative to the most expensive eligible model."""
    if max_price <= 0:
        return 1.0
    return _clamp(1.0 - model.cost_per_1k_tokens / max_price)


def availability_score(
    model_id: str,
    metrics: SystemMetrics | None,
    thresholds: AvailabilityThresholds = AvailabilityThresholds(),
) -> float:
    """Score from uptime, latency and queue depth; default when unreported."""
    health = metrics.get(model_id) if metrics else None
    if health is None:
        return _clamp(thresholds.default_score)

    # Downtime counts linearly, at half weight.
    score = 1.0 - (1.0 - _clamp(health.uptime_ratio)) * 0.5

    if health.current_latency_ms > thresholds.latency_critical_ms:
        score -= 0.3
    elif health.current_latency_ms > thresholds.latency_warn_ms:
        score -= 0.1

    if health.queue_depth > thresholds.queue_depth:
        score -= 0.2

    return _clamp(score)


def score_model(
    model: ModelConfig,
    *,
    categories: frozenset[str],
    max_price: float,
    metrics: SystemMetrics | None,
    weights: ScoringWeights,
    thresholds: AvailabilityThresholds,
    boosts: Mapping[str, tuple[frozenset[str], float]] = DEFAULT_CATEGORY_BOOSTS,
) -> ModelScore:
    """Compute all sub-scores and the weighted final score for one model."""
    quality = quality_score(model, categories, boosts)
    cost = cost_score(model, max_price)
    availability = availability_score(model.model_id, metrics, thresholds)
    return ModelScore(
        model_id=model.model_id,
        quality=quality,
        cost=cost,
        availability=availability,
        final=weights.combine(quality, cost, availability),
    )
