"""Tests for spend tracking, budget ceilings, alerts and cost analysis."""

from __future__ import annotations

import threading

import pytest

from model_hub import budget as budget_module
from model_hub.budget import DAY_SECONDS, MONTH_SECONDS, BudgetTracker
from model_hub.exceptions import BudgetExceeded
from model_hub.types import AlertType, BudgetLimits, BudgetPeriod
from tests.conftest import Clock


def _tracker(clock: Clock, **limits) -> BudgetTracker:
    return BudgetTracker(BudgetLimits(**limits), clock=clock)


class TestBudgetCheck:
    def test_request_that_crosses_limit_is_admitted_but_next_is_rejected(self, clock):
        tracker = _tracker(clock, daily_limit=10.0, monthly_limit=100.0)

        tracker.record_usage(9.99)
        tracker.check_budget()  # 9.99 < 10.00
        tracker.record_usage(0.02)

        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget()
        assert exc_info.value.period == "daily"
        assert exc_info.value.usage == pytest.approx(10.01)
        assert exc_info.value.limit == 10.0

    def test_monthly_limit_is_enforced(self, clock):
        tracker = _tracker(clock, monthly_limit=5.0)
        tracker.record_usage(5.0)

        with pytest.raises(BudgetExceeded) as exc_info:
            tracker.check_budget()
        assert exc_info.value.period == "monthly"

    def test_no_limits_never_rejects(self, clock):
        tracker = BudgetTracker(clock=clock)
        tracker.record_usage(1_000_000.0)
        tracker.check_budget()

    def test_negative_cost_is_rejected(self, clock):
        tracker = BudgetTracker(clock=clock)
        with pytest.raises(ValueError):
            tracker.record_usage(-0.01)

    def test_raised_limit_readmits_requests(self, clock):
        tracker = _tracker(clock, daily_limit=1.0)
        tracker.record_usage(1.5)
        with pytest.raises(BudgetExceeded):
            tracker.check_budget()

        tracker.set_limits(BudgetLimits(daily_limit=2.0))
        tracker.check_budget()
        assert tracker.limits.daily_limit == 2.0


class TestWindowResets:
    def test_daily_window_resets_after_a_day(self, clock):
        tracker = _tracker(clock, daily_limit=10.0, monthly_limit=100.0)
        tracker.record_usage(10.5)

        clock.advance(DAY_SECONDS + 1)
        tracker.check_budget()

        usage = tracker.get_usage()
        assert usage.daily_usage == 0.0
        assert usage.monthly_usage == pytest.approx(10.5)
        assert usage.daily_reset_at == clock.now

    def test_daily_window_not_reset_at_exactly_a_day(self, clock):
        tracker = _tracker(clock, daily_limit=10.0)
        tracker.record_usage(3.0)

        clock.advance(DAY_SECONDS)
        assert tracker.get_usage().daily_usage == pytest.approx(3.0)

    def test_monthly_window_resets_after_thirty_days(self, clock):
        tracker = _tracker(clock, monthly_limit=100.0)
        tracker.record_usage(42.0)

        clock.advance(MONTH_SECONDS + 1)
        usage = tracker.get_usage()
        assert usage.monthly_usage == 0.0
        assert usage.daily_usage == 0.0

    def test_usage_after_reset_accumulates_fresh(self, clock):
        tracker = _tracker(clock, daily_limit=10.0)
        tracker.record_usage(4.0)
        clock.advance(DAY_SECONDS + 1)
        tracker.record_usage(1.0)
        assert tracker.get_usage().daily_usage == pytest.approx(1.0)

    def test_monthly_reset_starts_a_fresh_daily_window(self, clock):
        tracker = _tracker(clock, daily_limit=10.0, monthly_limit=100.0)
        tracker.record_usage(1.0)

        # Daily window rolls over an hour before the month does
        clock.advance(MONTH_SECONDS - 3600)
        tracker.record_usage(5.0)
        assert tracker.get_usage().daily_usage == pytest.approx(5.0)

        clock.advance(7200)
        usage = tracker.get_usage()
        assert usage.monthly_usage == 0.0
        assert usage.daily_usage == 0.0
        assert usage.daily_reset_at == usage.monthly_reset_at == clock.now

    def test_concurrent_usage_across_a_day_boundary_resets_once(self, clock, monkeypatch):
        events: list[str] = []

        class RecordingLog:
            def _record(self, event, **kw):
                events.append(event)

            info = debug = warning = _record

        monkeypatch.setattr(budget_module, "log", RecordingLog())
        tracker = _tracker(clock, daily_limit=1_000.0)
        tracker.record_usage(7.0)
        clock.advance(DAY_SECONDS + 1)

        costs = [0.01 * (i + 1) for i in range(64)]
        barrier = threading.Barrier(len(costs))

        def spend(cost: float) -> None:
            barrier.wait()
            tracker.check_budget()
            tracker.record_usage(cost)

        threads = [threading.Thread(target=spend, args=(c,)) for c in costs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        usage = tracker.get_usage()
        assert events.count("budget.daily_reset") == 1
        assert usage.daily_usage == pytest.approx(sum(costs))
        assert usage.monthly_usage == pytest.approx(7.0 + sum(costs))


class TestAlerts:
    def test_no_alert_below_warning(self, clock):
        tracker = _tracker(clock, daily_limit=10.0)
        tracker.record_usage(5.0)
        assert tracker.check_alerts() == []

    def test_warning_then_critical_then_exceeded(self, clock):
        tracker = _tracker(clock, daily_limit=10.0)

        tracker.record_usage(8.5)
        [alert] = tracker.check_alerts()
        assert alert.type is AlertType.WARNING
        assert alert.period is BudgetPeriod.DAILY
        assert alert.percentage == pytest.approx(85.0)

        tracker.record_usage(1.2)
        [alert] = tracker.check_alerts()
        assert alert.type is AlertType.CRITICAL

        tracker.record_usage(0.5)
        [alert] = tracker.check_alerts()
        assert alert.type is AlertType.EXCEEDED
        assert "Daily budget exceeded" in alert.message

    def test_one_alert_per_window(self, clock):
        tracker = _tracker(clock, daily_limit=10.0, monthly_limit=10.0)
        tracker.record_usage(9.0)

        alerts = tracker.check_alerts()
        assert {a.period for a in alerts} == {BudgetPeriod.DAILY, BudgetPeriod.MONTHLY}
        assert all(a.type is AlertType.WARNING for a in alerts)

    def test_custom_thresholds(self, clock):
        tracker = _tracker(clock, daily_limit=100.0, warning_threshold=50.0, critical_threshold=60.0)
        tracker.record_usage(61.0)
        [alert] = tracker.check_alerts()
        assert alert.type is AlertType.CRITICAL


class TestCostAnalysis:
    def test_empty_history(self, clock):
        analysis = BudgetTracker(clock=clock).get_cost_analysis("24h")
        assert analysis.total_cost == 0.0
        assert analysis.request_count == 0
        assert analysis.cost_per_request == 0.0

    def test_breakdown_and_projection(self, clock):
        tracker = BudgetTracker(clock=clock)
        tracker.record_usage(0.02, provider="openai", model="gpt-4o", tokens=1000)
        tracker.record_usage(0.01, provider="anthropic", model="claude-3-5-haiku", tokens=2000)

        analysis = tracker.get_cost_analysis("24h")

        assert analysis.request_count == 2
        assert analysis.total_cost == pytest.approx(0.03)
        assert analysis.cost_by_provider == {
            "openai": pytest.approx(0.02),
            "anthropic": pytest.approx(0.01),
        }
        assert analysis.cost_by_model["gpt-4o"] == pytest.approx(0.02)
        assert analysis.cost_per_request == pytest.approx(0.015)
        assert analysis.cost_per_token == pytest.approx(0.03 / 3000)
        assert analysis.projected_monthly_cost == pytest.approx(0.03 * 30)
        # 3000 tokens at the priciest observed rate (0.02 / 1000) minus actual spend
        assert analysis.savings_vs_baseline == pytest.approx(0.06 - 0.03)

    def test_records_outside_window_are_ignored(self, clock):
        tracker = BudgetTracker(clock=clock)
        tracker.record_usage(1.0, provider="old", model="m", tokens=10)
        clock.advance(2 * 60 * 60)
        tracker.record_usage(0.5, provider="new", model="m", tokens=10)

        analysis = tracker.get_cost_analysis("1h")
        assert analysis.request_count == 1
        assert analysis.cost_by_provider == {"new": pytest.approx(0.5)}
        assert analysis.projected_monthly_cost == pytest.approx(0.5 * 24 * 30)

    def test_unknown_time_range_raises(self, clock):
        with pytest.raises(ValueError):
            BudgetTracker(clock=clock).get_cost_analysis("90d")


class TestBudgetLimits:
    def test_warning_above_critical_is_invalid(self):
        with pytest.raises(ValueError):
            BudgetLimits(warning_threshold=96.0, critical_threshold=95.0)

    def test_non_positive_limit_is_invalid(self):
        with pytest.raises(ValueError):
            BudgetLimits(daily_limit=0)
