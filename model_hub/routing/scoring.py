"""Candidate scoring for the intelligent router.

Every eligible model is scored on five axes normalised to [0, 1] and the
axes are combined with strategy-dependent weights:

    axis         higher is better when ...
    cost         estimated request cost is low relative to the cost threshold
    performance  observed (or declared) latency is low relative to the threshold
    quality      the model declares many capabilities/features and a big context
    health       the provider's last health check passed
    load         the provider has few in-flight calls and a high balancer weight

Quality is derived from static catalog metadata only. It is crude, but
routing decisions depend on it, so it is kept exactly as defined here.
"""

from __future__ import annotations

from dataclasses import dataclass

from model_hub.types import ModelDefinition, ProviderHealth, ProviderStatus, RoutingStrategy

# Normalisation ceilings for the quality axis
CAPABILITY_CEILING = 6
CONTEXT_WINDOW_CEILING = 128_000
FEATURE_CEILING = 8

# Connections at which the load axis reaches zero
MAX_CONNECTIONS = 100

HEALTH_SCORES = {
    ProviderStatus.HEALTHY: 1.0,
    ProviderStatus.DEGRADED: 0.6,
    ProviderStatus.UNHEALTHY: 0.0,
}
UNKNOWN_HEALTH_SCORE = 0.5


@dataclass(frozen=True)
class ScoreWeights:
    cost: float
    performance: float
    quality: float
    health: float
    load: float


STRATEGY_WEIGHTS: dict[RoutingStrategy, ScoreWeights] = {
    RoutingStrategy.COST_OPTIMIZED: ScoreWeights(0.5, 0.2, 0.1, 0.1, 0.1),
    RoutingStrategy.PERFORMANCE_FIRST: ScoreWeights(0.1, 0.5, 0.2, 0.1, 0.1),
    RoutingStrategy.QUALITY_FIRST: ScoreWeights(0.1, 0.2, 0.5, 0.1, 0.1),
    RoutingStrategy.BALANCED: ScoreWeights(0.25, 0.25, 0.25, 0.15, 0.1),
}
EVEN_WEIGHTS = ScoreWeights(0.2, 0.2, 0.2, 0.2, 0.2)


def weights_for(strategy: RoutingStrategy) -> ScoreWeights:
    return STRATEGY_WEIGHTS.get(strategy, EVEN_WEIGHTS)


@dataclass
class ModelScore:
    """Per-axis and combined score for one candidate model."""

    model: ModelDefinition
    total: float
    cost: float
    performance: float
    quality: float
    health: float
    load: float
    estimated_cost: float
    estimated_latency: float


def cost_score(cost: float, threshold: float) -> float:
    ceiling = max(threshold, cost * 2)
    if ceiling <= 0:
        return 1.0
    return max(0.0, 1 - cost / ceiling)


def performance_score(latency: float, threshold: float) -> float:
    ceiling = max(threshold, latency * 2)
    if ceiling <= 0:
        return 1.0
    return max(0.0, 1 - latency / ceiling)


def quality_score(model: ModelDefinition) -> float:
    capability = len(model.capabilities) / CAPABILITY_CEILING
    context = min(model.context_window / CONTEXT_WINDOW_CEILING, 1.0)
    features = len(model.supported_features) / FEATURE_CEILING
    return (capability + context + features) / 3


def health_score(health: ProviderHealth | None) -> float:
    if health is None:
        return UNKNOWN_HEALTH_SCORE
    return HEALTH_SCORES[health.status]


def load_score(connections: int, weight: float) -> float:
    return max(0.0, (1 - connections / MAX_CONNECTIONS) * weight)


def score_model(
    model: ModelDefinition,
    *,
    weights: ScoreWeights,
    estimated_cost: float,
    latency: float,
    health: ProviderHealth | None,
    connections: int,
    lb_weight: float,
    cost_threshold: float,
    latency_threshold: float,
) -> ModelScore:
    axes = {
        "cost": cost_score(estimated_cost, cost_threshold),
        "performance": performance_score(latency, latency_threshold),
        "quality": quality_score(model),
        "health": health_score(health),
        "load": load_score(connections, lb_weight),
    }
    total = (
        axes["cost"] * weights.cost
        + axes["performance"] * weights.performance
        + axes["quality"] * weights.quality
        + axes["health"] * weights.health
        + axes["load"] * weights.load
    )
    return ModelScore(
        model=model,
        total=total,
        estimated_cost=estimated_cost,
        estimated_latency=latency,
        **axes,
    )
