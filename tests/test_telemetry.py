"""Tests for log context binding and Prometheus instrumentation."""

from __future__ import annotations

import structlog

from model_hub.telemetry import clear_context, configure_logging, request_context
from model_hub.telemetry import prometheus


def _sample(name: str, labels: dict[str, str]) -> float:
    return prometheus.REGISTRY.get_sample_value(name, labels) or 0.0


class TestLogContext:
    def test_request_context_binds_and_restores(self):
        clear_context()
        with request_context("req_1", mode="chat"):
            bound = structlog.contextvars.get_contextvars()
            assert bound == {"request_id": "req_1", "mode": "chat"}

            with request_context("req_2"):
                assert structlog.contextvars.get_contextvars()["request_id"] == "req_2"

            assert structlog.contextvars.get_contextvars()["request_id"] == "req_1"

        assert structlog.contextvars.get_contextvars() == {}

    def test_configure_logging_json_mode(self):
        configure_logging(json_logs=True, log_level="WARNING")
        assert structlog.is_configured()
        structlog.reset_defaults()


class TestPrometheus:
    def test_successful_request_records_tokens_and_cost(self):
        labels = {"provider": "p-metrics", "model": "m-metrics"}
        before = _sample("hub_cost_usd_total", labels)

        prometheus.record_hub_request(
            provider="p-metrics",
            model="m-metrics",
            mode="chat",
            status="success",
            duration_seconds=0.2,
            prompt_tokens=10,
            completion_tokens=5,
            cost=0.5,
        )

        assert _sample("hub_cost_usd_total", labels) == before + 0.5
        assert (
            _sample("hub_tokens_total", {"model": "m-metrics", "token_type": "completion"}) >= 5
        )

    def test_failed_request_only_counts(self):
        labels = {"provider": "p-fail", "model": "m-fail"}
        prometheus.record_hub_request(provider="p-fail", model="m-fail", mode="chat", status="error")

        assert _sample("hub_requests_total", {**labels, "mode": "chat", "status": "error"}) == 1
        assert _sample("hub_cost_usd_total", labels) == 0.0

    def test_inflight_gauge_goes_up_and_down(self):
        prometheus.track_inflight("p-inflight", 1)
        prometheus.track_inflight("p-inflight", 1)
        prometheus.track_inflight("p-inflight", -1)
        assert _sample("hub_inflight_requests", {"provider": "p-inflight"}) == 1

    def test_budget_gauge(self):
        prometheus.update_budget_usage(1.5, 20.0)
        assert _sample("hub_budget_usage_usd", {"period": "daily"}) == 1.5
        assert _sample("hub_budget_usage_usd", {"period": "monthly"}) == 20.0

    def test_exposition_contains_hub_metrics(self):
        prometheus.record_cache_lookup(True)
        response = prometheus.get_metrics()
        assert b"hub_cache_lookups_total" in response.body
