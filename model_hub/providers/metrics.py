"""Rolling per-provider call metrics.

Each adapter owns one ProviderMetricsCollector and records every completed
or failed upstream call into it. Latencies are kept in a bounded window so
percentiles follow recent behaviour rather than the whole process lifetime.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field

import structlog

from model_hub.types import PerformanceMetrics

log = structlog.get_logger(__name__)

_LATENCY_WINDOW = 1000


@dataclass
class _Counters:
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0
    latencies: deque[float] = field(default_factory=lambda: deque(maxlen=_LATENCY_WINDOW))
    first_request_at: float | None = None


def _percentile(sorted_values: list[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(len(sorted_values) - 1, int(len(sorted_values) * pct))
    return sorted_values[index]


class ProviderMetricsCollector:
    """Aggregates success/failure counts, latency, cost and tokens.

    Totals are tracked for the provider as a whole and per model id.
    """

    def __init__(self, provider_id: str) -> None:
        self._provider_id = provider_id
        self._lock = threading.Lock()
        self._total = _Counters()
        self._by_model: dict[str, _Counters] = {}

    def record_success(
        self,
        model_id: str,
        *,
        latency_ms: float,
        cost: float,
        tokens: int,
    ) -> None:
        with self._lock:
            for counters in (self._total, self._model(model_id)):
                self._touch(counters)
                counters.success_count += 1
                counters.total_cost += cost
                counters.total_tokens += tokens
                counters.latencies.append(latency_ms)

    def record_failure(self, model_id: str, *, latency_ms: float) -> None:
        with self._lock:
            for counters in (self._total, self._model(model_id)):
                self._touch(counters)
                counters.failure_count += 1
                counters.latencies.append(latency_ms)

        log.debug(
            "provider_metrics.failure_recorded",
            provider_id=self._provider_id,
            model_id=model_id,
            latency_ms=round(latency_ms, 2),
        )

    @property
    def error_rate(self) -> float:
        with self._lock:
            return self._error_rate(self._total)

    def snapshot(self, model_id: str | None = None) -> PerformanceMetrics:
        """Current metrics for the provider, or for one of its models."""
        with self._lock:
            if model_id is None:
                counters = self._total
            else:
                counters = self._by_model.get(model_id, _Counters())
            return self._build(counters, model_id or "*")

    # ------------------------------------------------------------------ #
    # Internals (lock held)
    # ------------------------------------------------------------------ #

    def _model(self, model_id: str) -> _Counters:
        if model_id not in self._by_model:
            self._by_model[model_id] = _Counters()
        return self._by_model[model_id]

    @staticmethod
    def _touch(counters: _Counters) -> None:
        counters.request_count += 1
        if counters.first_request_at is None:
            counters.first_request_at = time.monotonic()

    @staticmethod
    def _error_rate(counters: _Counters) -> float:
        if counters.request_count == 0:
            return 0.0
        return counters.failure_count / counters.request_count

    def _build(self, counters: _Counters, model_id: str) -> PerformanceMetrics:
        latencies = sorted(counters.latencies)
        average = sum(latencies) / len(latencies) if latencies else 0.0

        throughput = 0.0
        if counters.first_request_at is not None:
            elapsed_min = (time.monotonic() - counters.first_request_at) / 60
            throughput = counters.request_count / max(elapsed_min, 1 / 60)

        return PerformanceMetrics(
            provider_id=self._provider_id,
            model_id=model_id,
            request_count=counters.request_count,
            success_count=counters.success_count,
            failure_count=counters.failure_count,
            average_latency=average,
            p95_latency=_percentile(latencies, 0.95),
            p99_latency=_percentile(latencies, 0.99),
            total_cost=counters.total_cost,
            total_tokens=counters.total_tokens,
            error_rate=self._error_rate(counters),
            throughput=throughput,
        )
