"""Per-provider load-balancer state and selection strategies.

Each provider carries a weight (derived from its last health check and error
rate), an in-flight call counter and the sequence number of the last time it
was picked. The router asks ``choose()`` to pick among score-sorted
candidates.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from model_hub.routing.scoring import ModelScore
from model_hub.types import LoadBalancingStrategy, ProviderHealth, ProviderStatus

log = structlog.get_logger(__name__)

_STATUS_WEIGHTS = {
    ProviderStatus.HEALTHY: 1.0,
    ProviderStatus.DEGRADED: 0.5,
    ProviderStatus.UNHEALTHY: 0.1,
}
MIN_ERROR_FACTOR = 0.1


@dataclass
class ProviderLoad:
    weight: float = 1.0
    connections: int = 0
    last_used: int = 0


class LoadBalancer:
    """Thread-safe load state for all registered providers."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._state: dict[str, ProviderLoad] = {}
        self._lock = threading.Lock()
        self._sequence = 0
        self._rng = rng or random.Random()

    def register(self, provider_id: str) -> None:
        with self._lock:
            self._state[provider_id] = ProviderLoad()

    def remove(self, provider_id: str) -> None:
        with self._lock:
            self._state.pop(provider_id, None)

    def get(self, provider_id: str) -> ProviderLoad:
        with self._lock:
            state = self._state.get(provider_id, ProviderLoad())
            return ProviderLoad(state.weight, state.connections, state.last_used)

    def acquire(self, provider_id: str) -> None:
        with self._lock:
            if provider_id in self._state:
                self._state[provider_id].connections += 1

    def release(self, provider_id: str) -> None:
        with self._lock:
            state = self._state.get(provider_id)
            if state is not None and state.connections > 0:
                state.connections -= 1

    def update_health(self, health: ProviderHealth) -> float:
        """Recompute a provider's weight from a health check. Returns the new weight."""
        weight = _STATUS_WEIGHTS[health.status] * max(MIN_ERROR_FACTOR, 1 - health.error_rate)
        with self._lock:
            state = self._state.get(health.provider_id)
            if state is None:
                return weight
            state.weight = weight

        log.debug(
            "load_balancer.weight_updated",
            provider_id=health.provider_id,
            status=health.status.value,
            weight=round(weight, 3),
        )
        return weight

    def mark_used(self, provider_id: str) -> None:
        with self._lock:
            self._sequence += 1
            if provider_id in self._state:
                self._state[provider_id].last_used = self._sequence

    def choose(
        self, strategy: LoadBalancingStrategy, candidates: Sequence[ModelScore]
    ) -> ModelScore:
        """Pick one of ``candidates`` (sorted best-first) under ``strategy``."""
        if not candidates:
            raise ValueError("choose() requires at least one candidate")

        if strategy is LoadBalancingStrategy.PERFORMANCE_BASED:
            return candidates[0]

        with self._lock:
            state = {
                pid: ProviderLoad(s.weight, s.connections, s.last_used)
                for pid, s in self._state.items()
            }

        def load_of(candidate: ModelScore) -> ProviderLoad:
            return state.get(candidate.model.provider_id, ProviderLoad())

        if strategy is LoadBalancingStrategy.ROUND_ROBIN:
            return min(candidates, key=lambda c: load_of(c).last_used)
        if strategy is LoadBalancingStrategy.LEAST_CONNECTIONS:
            return min(candidates, key=lambda c: load_of(c).connections)

        # Weighted: probability proportional to score
        total = sum(c.total for c in candidates)
        if total <= 0:
            return candidates[0]
        point = self._rng.uniform(0, total)
        for candidate in candidates:
            point -= candidate.total
            if point <= 0:
                return candidate
        return candidates[-1]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                pid: {
                    "weight": s.weight,
                    "connections": s.connections,
                    "last_used": s.last_used,
                }
                for pid, s in self._state.items()
            }
