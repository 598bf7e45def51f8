"""Intelligent router - picks the provider/model that should serve a request.

Selection:
1. An explicit ``request.model`` is honoured as long as its provider is not
   unhealthy. No alternatives are offered for explicit choices.
2. Otherwise all known models are filtered by the request's requirements
   (provider preferences, capabilities, features, max cost, max latency)
   and by provider health.
3. Eligible models are scored (see scoring.py) with strategy weights.
4. The configured load-balancing strategy picks the winner from the
   score-sorted list; the next three best become the fallback chain.

Health and metrics snapshots are pushed in by the hub's periodic monitor,
never fetched during selection, so routing stays a synchronous in-memory
computation.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import replace
from typing import Any

import structlog

from model_hub.exceptions import (
    ModelNotFound,
    NoEligibleModels,
    ProviderNotFound,
    ProviderUnavailable,
)
from model_hub.providers.base import ModelProvider
from model_hub.routing.load_balancer import LoadBalancer
from model_hub.routing.scoring import ModelScore, quality_score, score_model, weights_for
from model_hub.types import (
    ModelDefinition,
    ModelRequest,
    PerformanceMetrics,
    ProviderHealth,
    ProviderStatus,
    RouterConfig,
    RouterDecision,
)

log = structlog.get_logger(__name__)

MAX_ALTERNATIVES = 3

# Provider ids with a curated fallback order; other providers fall back
# through their own models cheapest first
DEFAULT_FALLBACK_CHAINS: dict[str, list[str]] = {
    "openai": ["gpt-4o-mini", "gpt-3.5-turbo"],
    "anthropic": ["claude-3-5-haiku-20241022", "claude-3-5-sonnet-20241022"],
}


class IntelligentRouter:
    """Multi-criteria model selection over the registered provider pool.

    The router keeps its own view of the catalog; providers are added and
    removed by the hub as they are registered and unregistered.
    """

    def __init__(
        self,
        config: RouterConfig | None = None,
        load_balancer: LoadBalancer | None = None,
    ) -> None:
        self._config = config or RouterConfig()
        self._lb = load_balancer or LoadBalancer()
        self._lock = threading.Lock()

        self._providers: dict[str, ModelProvider] = {}
        self._models: dict[str, ModelDefinition] = {}
        self._health: dict[str, ProviderHealth] = {}
        self._metrics: dict[str, PerformanceMetrics] = {}
        self._fallback_chains: dict[str, list[str]] = {}

        self._decisions = 0
        self._provider_usage: Counter[str] = Counter()
        self._model_usage: Counter[str] = Counter()
        self._estimated_cost_total = 0.0
        self._estimated_latency_total = 0.0

        log.info(
            "router.initialized",
            strategy=self._config.strategy.value,
            load_balancing=self._config.load_balancing.value,
        )

    # ------------------------------------------------------------------ #
    # Catalog management
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> RouterConfig:
        return self._config

    def update_config(self, config: RouterConfig) -> None:
        with self._lock:
            self._config = config
        log.info(
            "router.config_updated",
            strategy=config.strategy.value,
            load_balancing=config.load_balancing.value,
            enable_fallback=config.enable_fallback,
        )

    def add_provider(self, provider: ModelProvider) -> list[ModelDefinition]:
        """Ingest a provider's models. Returns the models added."""
        provider_id = provider.provider_id
        models = [
            m if m.provider_id == provider_id else replace(m, provider_id=provider_id)
            for m in provider.list_models()
        ]
        with self._lock:
            self._providers[provider_id] = provider
            for model in models:
                self._models[model.id] = model
            self._fallback_chains[provider_id] = _default_fallback_chain(provider_id, models)
        self._lb.register(provider_id)

        log.info("router.provider_added", provider_id=provider_id, models=[m.id for m in models])
        return models

    def remove_provider(self, provider_id: str) -> None:
        """Forget a provider and every model it served.

        Raises:
            ProviderNotFound: If the provider was never added
        """
        with self._lock:
            if provider_id not in self._providers:
                raise ProviderNotFound(provider_id)
            del self._providers[provider_id]
            removed = [mid for mid, m in self._models.items() if m.provider_id == provider_id]
            for model_id in removed:
                del self._models[model_id]
            self._health.pop(provider_id, None)
            self._metrics.pop(provider_id, None)
            self._fallback_chains.pop(provider_id, None)
        self._lb.remove(provider_id)

        log.info("router.provider_removed", provider_id=provider_id, models=removed)

    def get_model(self, model_id: str) -> ModelDefinition:
        with self._lock:
            model = self._models.get(model_id)
        if model is None:
            raise ModelNotFound(model_id)
        return model

    def list_models(self) -> list[ModelDefinition]:
        with self._lock:
            return list(self._models.values())

    def get_fallback_chain(self, provider_id: str) -> list[str]:
        """Configured fallback chain, or the provider's models cheapest first."""
        with self._lock:
            if self._config.fallback_chain:
                return list(self._config.fallback_chain)
            return list(self._fallback_chains.get(provider_id, []))

    # ------------------------------------------------------------------ #
    # Snapshots pushed by the monitor
    # ------------------------------------------------------------------ #

    def update_health(self, health: ProviderHealth) -> None:
        with self._lock:
            if health.provider_id not in self._providers:
                return
            self._health[health.provider_id] = health
        self._lb.update_health(health)

    def update_metrics(self, provider_id: str, metrics: PerformanceMetrics) -> None:
        with self._lock:
            if provider_id in self._providers:
                self._metrics[provider_id] = metrics

    def get_health(self, provider_id: str) -> ProviderHealth | None:
        with self._lock:
            return self._health.get(provider_id)

    def acquire(self, provider_id: str) -> None:
        self._lb.acquire(provider_id)

    def release(self, provider_id: str) -> None:
        self._lb.release(provider_id)

    # ------------------------------------------------------------------ #
    # Selection
    # ------------------------------------------------------------------ #

    def select_model(self, request: ModelRequest, *, record: bool = True) -> RouterDecision:
        """Choose the model that should serve ``request``.

        Args:
            request: Request to route
            record: Commit the decision (round-robin position and analytics).
                Previews pass False so they do not change the next decision.

        Returns:
            RouterDecision with the winner and up to three alternatives

        Raises:
            ModelNotFound: Explicit model id is unknown
            ProviderUnavailable: Explicit model's provider is unhealthy
            NoEligibleModels: No model satisfies the request requirements
        """
        start = time.perf_counter()
        if request.model:
            decision = self._select_explicit(request)
        else:
            decision = self._select_scored(request, start)

        if not record:
            log.debug(
                "router.model_previewed",
                request_id=request.request_id,
                model=decision.selected_model,
                provider=decision.provider,
            )
            return decision

        self._lb.mark_used(decision.provider)
        with self._lock:
            self._decisions += 1
            self._provider_usage[decision.provider] += 1
            self._model_usage[decision.selected_model] += 1
            self._estimated_cost_total += decision.estimated_cost
            self._estimated_latency_total += decision.estimated_latency

        log.info(
            "router.model_selected",
            request_id=request.request_id,
            model=decision.selected_model,
            provider=decision.provider,
            confidence=round(decision.confidence, 3),
            alternatives=decision.alternative_models,
        )
        return decision

    def eligible_models(self, request: ModelRequest) -> list[ModelDefinition]:
        """Models that satisfy the request's requirements and health constraints."""
        requirements = request.requirements
        with self._lock:
            models = list(self._models.values())
            health = dict(self._health)

        eligible: list[ModelDefinition] = []
        for model in models:
            provider_health = health.get(model.provider_id)
            if provider_health is not None and provider_health.status is ProviderStatus.UNHEALTHY:
                continue
            if requirements is not None:
                if model.provider_id in requirements.excluded_providers:
                    continue
                if (
                    requirements.preferred_providers
                    and model.provider_id not in requirements.preferred_providers
                ):
                    continue
                if not set(requirements.required_capabilities) <= set(model.capabilities):
                    continue
                if not set(requirements.required_features) <= set(model.supported_features):
                    continue
                if (
                    requirements.max_cost is not None
                    and self._estimate_cost(model, request) > requirements.max_cost
                ):
                    continue
                if (
                    requirements.max_latency is not None
                    and self._effective_latency(model) > requirements.max_latency
                ):
                    continue
            eligible.append(model)
        return eligible

    def _select_explicit(self, request: ModelRequest) -> RouterDecision:
        model = self.get_model(request.model or "")
        health = self.get_health(model.provider_id)
        if health is not None and health.status is ProviderStatus.UNHEALTHY:
            raise ProviderUnavailable(model.provider_id, health.error or "provider is unhealthy")

        cost = self._estimate_cost(model, request)
        latency = self._effective_latency(model)
        return RouterDecision(
            selected_model=model.id,
            provider=model.provider_id,
            reasoning=["Explicit model requested"],
            alternative_models=[],
            estimated_cost=cost,
            estimated_latency=latency,
            quality_score=1.0,
            confidence=1.0,
        )

    def _select_scored(self, request: ModelRequest, start: float) -> RouterDecision:
        eligible = self.eligible_models(request)
        if not eligible:
            raise NoEligibleModels("No models satisfy the request requirements")

        config = self._config
        scored = sorted(
            (self._score(model, request) for model in eligible),
            key=lambda s: s.total,
            reverse=True,
        )
        winner = self._lb.choose(config.load_balancing, scored)
        alternatives = [s.model.id for s in scored if s.model.id != winner.model.id]

        elapsed_ms = (time.perf_counter() - start) * 1000
        return RouterDecision(
            selected_model=winner.model.id,
            provider=winner.model.provider_id,
            reasoning=[
                f"Strategy: {config.strategy.value}",
                f"Load balancing: {config.load_balancing.value}",
                f"Selection time: {elapsed_ms:.2f}ms",
                f"Score: {winner.total:.3f}",
                f"Estimated cost: ${winner.estimated_cost:.6f}",
                f"Estimated latency: {winner.estimated_latency:.0f}ms",
            ],
            alternative_models=alternatives[:MAX_ALTERNATIVES],
            estimated_cost=winner.estimated_cost,
            estimated_latency=winner.estimated_latency,
            quality_score=winner.quality,
            confidence=min(winner.total, 1.0),
        )

    def _score(self, model: ModelDefinition, request: ModelRequest) -> ModelScore:
        load = self._lb.get(model.provider_id)
        return score_model(
            model,
            weights=weights_for(self._config.strategy),
            estimated_cost=self._estimate_cost(model, request),
            latency=self._effective_latency(model),
            health=self.get_health(model.provider_id),
            connections=load.connections,
            lb_weight=load.weight,
            cost_threshold=self._config.cost_threshold,
            latency_threshold=self._config.latency_threshold,
        )

    def _estimate_cost(self, model: ModelDefinition, request: ModelRequest) -> float:
        with self._lock:
            provider = self._providers.get(model.provider_id)
        if provider is None:
            raise ProviderNotFound(model.provider_id)
        return provider.estimate_cost(request.messages, model.id)

    def _effective_latency(self, model: ModelDefinition) -> float:
        """Observed provider latency when available, else the declared one."""
        with self._lock:
            metrics = self._metrics.get(model.provider_id)
        if metrics is not None and metrics.average_latency > 0:
            return metrics.average_latency
        return model.average_latency

    # ------------------------------------------------------------------ #
    # Analytics
    # ------------------------------------------------------------------ #

    def get_analytics(self) -> dict[str, Any]:
        with self._lock:
            decisions = self._decisions
            return {
                "total_decisions": decisions,
                "provider_usage": dict(self._provider_usage),
                "model_usage": dict(self._model_usage),
                "average_estimated_cost": (
                    self._estimated_cost_total / decisions if decisions else 0.0
                ),
                "average_estimated_latency": (
                    self._estimated_latency_total / decisions if decisions else 0.0
                ),
                "models": {
                    mid: {"provider": m.provider_id, "quality": round(quality_score(m), 4)}
                    for mid, m in self._models.items()
                },
                "health": {pid: h.status.value for pid, h in self._health.items()},
                "fallback_chains": {
                    pid: list(self._config.fallback_chain or chain)
                    for pid, chain in self._fallback_chains.items()
                },
                "load_balancer": self._lb.snapshot(),
                "strategy": self._config.strategy.value,
                "load_balancing": self._config.load_balancing.value,
            }


def _default_fallback_chain(provider_id: str, models: list[ModelDefinition]) -> list[str]:
    served = {m.id for m in models}
    curated = [mid for mid in DEFAULT_FALLBACK_CHAINS.get(provider_id, []) if mid in served]
    if curated:
        return curated
    return [
        m.id
        for m in sorted(
            models,
            key=lambda m: (m.input_cost_per_1k + m.output_cost_per_1k, m.average_latency),
        )
    ]
