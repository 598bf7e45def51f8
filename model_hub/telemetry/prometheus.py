"""Prometheus metrics for the hub and its HTTP surface.

Metrics exported:
- http_requests_total / http_request_duration_seconds: HTTP traffic
- hub_requests_total: chat/stream outcomes by provider, model and status
- hub_request_duration_seconds: upstream call latency by provider and model
- hub_tokens_total: tokens consumed by model and token type
- hub_cost_usd_total: spend by provider and model
- hub_cache_lookups_total: response cache hits and misses
- hub_fallbacks_total: fallback transitions between models
- hub_budget_usage_usd: current spend per budget window
- hub_inflight_requests: upstream calls in flight per provider

All metrics live on a dedicated registry so that several hubs or test
processes never clash with the default prometheus_client registry.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog
from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

log = structlog.get_logger(__name__)


REGISTRY = CollectorRegistry(auto_describe=True)


# ------------------------------------------------------------------ #
# HTTP Metrics
# ------------------------------------------------------------------ #

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=REGISTRY,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Hub Metrics
# ------------------------------------------------------------------ #

hub_requests_total = Counter(
    "hub_requests_total",
    "Requests served by the model hub",
    ["provider", "model", "mode", "status"],
    registry=REGISTRY,
)

hub_request_duration_seconds = Histogram(
    "hub_request_duration_seconds",
    "Upstream model call latency in seconds",
    ["provider", "model"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)

hub_tokens_total = Counter(
    "hub_tokens_total",
    "Tokens consumed",
    ["model", "token_type"],
    registry=REGISTRY,
)

hub_cost_usd_total = Counter(
    "hub_cost_usd_total",
    "Spend in USD",
    ["provider", "model"],
    registry=REGISTRY,
)

hub_cache_lookups_total = Counter(
    "hub_cache_lookups_total",
    "Response cache lookups",
    ["result"],
    registry=REGISTRY,
)

hub_fallbacks_total = Counter(
    "hub_fallbacks_total",
    "Fallbacks from a failed model to the next alternative",
    ["from_model", "to_model"],
    registry=REGISTRY,
)

hub_budget_usage_usd = Gauge(
    "hub_budget_usage_usd",
    "Current spend in the budget window",
    ["period"],
    registry=REGISTRY,
)

hub_inflight_requests = Gauge(
    "hub_inflight_requests",
    "Upstream calls currently in flight",
    ["provider"],
    registry=REGISTRY,
)


# ------------------------------------------------------------------ #
# Instrumentation Functions
# ------------------------------------------------------------------ #


def record_hub_request(
    *,
    provider: str,
    model: str,
    mode: str,
    status: str,
    duration_seconds: float = 0.0,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    cost: float = 0.0,
) -> None:
    """Record the outcome of one chat or stream call.

    Args:
        provider: Provider id that served (or failed) the call
        model: Model id
        mode: "chat" or "stream"
        status: success, error or cached
        duration_seconds: Upstream latency
        prompt_tokens: Prompt tokens consumed
        completion_tokens: Completion tokens consumed
        cost: Spend in USD
    """
    hub_requests_total.labels(provider=provider, model=model, mode=mode, status=status).inc()
    if status != "success":
        return

    hub_request_duration_seconds.labels(provider=provider, model=model).observe(duration_seconds)
    hub_tokens_total.labels(model=model, token_type="prompt").inc(prompt_tokens)
    hub_tokens_total.labels(model=model, token_type="completion").inc(completion_tokens)
    hub_cost_usd_total.labels(provider=provider, model=model).inc(cost)


def record_cache_lookup(hit: bool) -> None:
    hub_cache_lookups_total.labels(result="hit" if hit else "miss").inc()


def record_fallback(from_model: str, to_model: str) -> None:
    hub_fallbacks_total.labels(from_model=from_model, to_model=to_model).inc()


def update_budget_usage(daily: float, monthly: float) -> None:
    hub_budget_usage_usd.labels(period="daily").set(daily)
    hub_budget_usage_usd.labels(period="monthly").set(monthly)


def track_inflight(provider: str, delta: int) -> None:
    hub_inflight_requests.labels(provider=provider).inc(delta)


# ------------------------------------------------------------------ #
# Middleware
# ------------------------------------------------------------------ #


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Records HTTP request count and latency for every route but /metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            http_requests_total.labels(
                method=request.method,
                endpoint=request.url.path,
                status=str(status_code),
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=request.url.path,
            ).observe(time.time() - start_time)


def get_metrics() -> Response:
    """Prometheus exposition of REGISTRY."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
        status_code=200,
    )
