"""Spend budget tracking for the hub.

The BudgetTracker accounts USD spend against rolling daily and monthly
windows. It provides:
- A pre-flight check that rejects requests once a ceiling is reached
- Usage recording after every successful call
- Warning / critical / exceeded alerts at configurable thresholds
- Cost analysis over recent history (by provider, by model, projections)

Windows are rolling: the daily accumulator resets once 24h have elapsed since
its last reset, the monthly one after 30 x 24h. They are not aligned to
calendar days or months.

The check is made against usage *already recorded*, not usage including the
request being checked, so a single request may take spend slightly past the
ceiling; the next check then fails.

All state lives in memory and is guarded by one lock, so a window reset is
applied exactly once no matter how many concurrent callers observe the stale
window.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace

import structlog

from model_hub.exceptions import BudgetExceeded
from model_hub.types import (
    AlertType,
    BudgetAlert,
    BudgetLimits,
    BudgetPeriod,
    BudgetUsage,
    CostAnalysis,
    ModelRequest,
)

log = structlog.get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60
MONTH_SECONDS = 30 * DAY_SECONDS

TIME_RANGES: dict[str, int] = {
    "1h": 60 * 60,
    "24h": DAY_SECONDS,
    "7d": 7 * DAY_SECONDS,
    "30d": MONTH_SECONDS,
}


@dataclass(frozen=True)
class CostRecord:
    """One recorded call, kept for cost analysis."""

    timestamp: float
    provider: str
    model: str
    cost: float
    tokens: int


class BudgetTracker:
    """Tracks spend against daily/monthly ceilings.

    Args:
        limits: Initial ceilings and alert thresholds
        clock: Source of wall-clock seconds (injectable for tests)
        history_size: Maximum number of cost records kept for analysis
    """

    def __init__(
        self,
        limits: BudgetLimits | None = None,
        *,
        clock: Callable[[], float] = time.time,
        history_size: int = 10_000,
    ) -> None:
        self._limits = limits or BudgetLimits()
        self._clock = clock
        now = clock()
        self._usage = BudgetUsage(daily_reset_at=now, monthly_reset_at=now)
        self._history: deque[CostRecord] = deque(maxlen=history_size)
        self._lock = threading.Lock()

        log.info(
            "budget.initialized",
            daily_limit=self._limits.daily_limit,
            monthly_limit=self._limits.monthly_limit,
        )

    @property
    def limits(self) -> BudgetLimits:
        return self._limits

    def set_limits(self, limits: BudgetLimits) -> None:
        with self._lock:
            self._limits = limits
        log.info(
            "budget.limits_updated",
            daily_limit=limits.daily_limit,
            monthly_limit=limits.monthly_limit,
            warning_threshold=limits.warning_threshold,
            critical_threshold=limits.critical_threshold,
        )

    def check_budget(self, request: ModelRequest | None = None) -> None:
        """Reject the request if a ceiling has already been reached.

        Args:
            request: Request being admitted (used for log correlation only)

        Raises:
            BudgetExceeded: If daily or monthly usage meets or exceeds its limit
        """
        with self._lock:
            self._maybe_reset(self._clock())
            daily, monthly = self._usage.daily_usage, self._usage.monthly_usage
            limits = self._limits

        request_id = request.request_id if request is not None else None
        if limits.daily_limit is not None and daily >= limits.daily_limit:
            log.warning(
                "budget.exceeded",
                period=BudgetPeriod.DAILY.value,
                usage=daily,
                limit=limits.daily_limit,
                request_id=request_id,
            )
            raise BudgetExceeded(BudgetPeriod.DAILY.value, daily, limits.daily_limit)
        if limits.monthly_limit is not None and monthly >= limits.monthly_limit:
            log.warning(
                "budget.exceeded",
                period=BudgetPeriod.MONTHLY.value,
                usage=monthly,
                limit=limits.monthly_limit,
                request_id=request_id,
            )
            raise BudgetExceeded(BudgetPeriod.MONTHLY.value, monthly, limits.monthly_limit)

    def record_usage(
        self,
        cost: float,
        *,
        provider: str = "",
        model: str = "",
        tokens: int = 0,
    ) -> None:
        """Add ``cost`` to both accumulators.

        Raises:
            ValueError: If cost is negative
        """
        if cost < 0:
            raise ValueError("cost cannot be negative")

        with self._lock:
            now = self._clock()
            self._maybe_reset(now)
            self._usage.daily_usage += cost
            self._usage.monthly_usage += cost
            self._history.append(CostRecord(now, provider, model, cost, tokens))
            daily, monthly = self._usage.daily_usage, self._usage.monthly_usage

        log.debug(
            "budget.usage_recorded",
            cost=cost,
            provider=provider,
            model=model,
            daily_usage=round(daily, 6),
            monthly_usage=round(monthly, 6),
        )

    def get_usage(self) -> BudgetUsage:
        with self._lock:
            self._maybe_reset(self._clock())
            return replace(self._usage)

    def check_alerts(self) -> list[BudgetAlert]:
        """Alerts for every window at or above its warning threshold.

        At most one alert per window: the most severe that applies.
        """
        usage = self.get_usage()
        limits = self._limits
        alerts: list[BudgetAlert] = []

        for period, used, limit in (
            (BudgetPeriod.DAILY, usage.daily_usage, limits.daily_limit),
            (BudgetPeriod.MONTHLY, usage.monthly_usage, limits.monthly_limit),
        ):
            if limit is None:
                continue
            pct = used / limit * 100
            if used >= limit:
                alert_type = AlertType.EXCEEDED
            elif pct >= limits.critical_threshold:
                alert_type = AlertType.CRITICAL
            elif pct >= limits.warning_threshold:
                alert_type = AlertType.WARNING
            else:
                continue

            alerts.append(
                BudgetAlert(
                    type=alert_type,
                    period=period,
                    current_usage=used,
                    limit=limit,
                    percentage=round(pct, 2),
                    message=(
                        f"{period.value.capitalize()} budget {alert_type.value}: "
                        f"${used:.2f} of ${limit:.2f} ({pct:.1f}%)"
                    ),
                )
            )

        for alert in alerts:
            log.warning(
                "budget.alert",
                type=alert.type.value,
                period=alert.period.value,
                percentage=alert.percentage,
            )
        return alerts

    def get_cost_analysis(self, time_range: str = "24h") -> CostAnalysis:
        """Summarise recorded spend over ``time_range`` (1h, 24h, 7d or 30d).

        Savings are measured against billing every recorded token at the
        highest per-token rate seen in the window, i.e. what routing
        everything to the most expensive model used would have cost.

        Raises:
            ValueError: If time_range is not recognised
        """
        if time_range not in TIME_RANGES:
            raise ValueError(
                f"Unknown time_range {time_range!r}; expected one of {sorted(TIME_RANGES)}"
            )
        window = TIME_RANGES[time_range]

        with self._lock:
            cutoff = self._clock() - window
            records = [r for r in self._history if r.timestamp >= cutoff]

        analysis = CostAnalysis(time_range=time_range, request_count=len(records))
        if not records:
            return analysis

        total_tokens = 0
        max_rate = 0.0
        for record in records:
            analysis.total_cost += record.cost
            total_tokens += record.tokens
            analysis.cost_by_provider[record.provider] = (
                analysis.cost_by_provider.get(record.provider, 0.0) + record.cost
            )
            analysis.cost_by_model[record.model] = (
                analysis.cost_by_model.get(record.model, 0.0) + record.cost
            )
            if record.tokens:
                max_rate = max(max_rate, record.cost / record.tokens)

        analysis.cost_per_request = analysis.total_cost / len(records)
        analysis.cost_per_token = analysis.total_cost / total_tokens if total_tokens else 0.0
        analysis.projected_monthly_cost = analysis.total_cost * (MONTH_SECONDS / window)
        analysis.savings_vs_baseline = max(0.0, total_tokens * max_rate - analysis.total_cost)
        return analysis

    def _maybe_reset(self, now: float) -> None:
        """Reset windows whose period has elapsed. Caller holds the lock.

        A monthly reset starts a fresh daily window too, so daily usage never
        exceeds monthly usage.
        """
        if now - self._usage.monthly_reset_at > MONTH_SECONDS:
            log.info(
                "budget.monthly_reset",
                previous_usage=self._usage.monthly_usage,
                previous_daily_usage=self._usage.daily_usage,
            )
            self._usage.monthly_usage = 0.0
            self._usage.monthly_reset_at = now
            self._usage.daily_usage = 0.0
            self._usage.daily_reset_at = now

        if now - self._usage.daily_reset_at > DAY_SECONDS:
            log.info("budget.daily_reset", previous_usage=self._usage.daily_usage)
            self._usage.daily_usage = 0.0
            self._usage.daily_reset_at = now
