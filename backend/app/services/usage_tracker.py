"""
AI spend and request-rate accounting.

UsageTracker keeps per-day and per-month cost windows keyed by
"YYYY-MM-DD" / "YYYY-MM" and refuses calls that would overrun either budget.
RateLimiter is a per-model sliding 60-second window over a deque of
monotonic timestamps.

Both are plain objects owned by whoever constructs them (the API builds one
of each per process). They take no locks: every read-then-write happens on
the event-loop thread without an await in between.
"""
from __future__ import annotations

import collections
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app import config

logger = logging.getLogger("inspection-api.usage")

DAILY_RETENTION_DAYS = 30
MONTHLY_RETENTION_MONTHS = 6
WINDOW_SECONDS = 60.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UsageRecord:
    key: str
    calls: int = 0
    cost: float = 0.0
    model_breakdown: dict[str, dict] = field(default_factory=dict)

    def add(self, model: str, cost: float) -> None:
        self.calls += 1
        self.cost += cost
        entry = self.model_breakdown.setdefault(model, {"calls": 0, "cost": 0.0})
        entry["calls"] += 1
        entry["cost"] += cost

    def remove(self, model: str, cost: float) -> None:
        self.calls = max(0, self.calls - 1)
        self.cost = max(0.0, self.cost - cost)
        entry = self.model_breakdown.get(model)
        if entry is None:
            return
        entry["calls"] -= 1
        entry["cost"] = max(0.0, entry["cost"] - cost)
        if entry["calls"] <= 0:
            del self.model_breakdown[model]

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "calls": self.calls,
            "cost": round(self.cost, 6),
            "model_breakdown": {
                model: {"calls": v["calls"], "cost": round(v["cost"], 6)}
                for model, v in self.model_breakdown.items()
            },
        }


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    remaining_budget: float
    reason: Optional[str] = None


class UsageTracker:
    def __init__(
        self,
        daily_budget: Optional[float] = None,
        monthly_budget: Optional[float] = None,
        warning_ratio: float = config.AI_BUDGET_WARNING_RATIO,
        critical_ratio: float = config.AI_BUDGET_CRITICAL_RATIO,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.daily_budget = config.AI_DAILY_BUDGET_USD if daily_budget is None else daily_budget
        self.monthly_budget = config.AI_MONTHLY_BUDGET_USD if monthly_budget is None else monthly_budget
        self.warning_ratio = warning_ratio
        self.critical_ratio = critical_ratio
        self._clock = clock or _utcnow
        self._daily: dict[str, UsageRecord] = {}
        self._monthly: dict[str, UsageRecord] = {}

    def _keys(self) -> tuple[str, str]:
        now = self._clock()
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")

    def _current(self) -> tuple[UsageRecord, UsageRecord]:
        day, month = self._keys()
        return (
            self._daily.get(day) or UsageRecord(day),
            self._monthly.get(month) or UsageRecord(month),
        )

    def check_budget(self, model: str, estimated_cost: float) -> BudgetDecision:
        daily, monthly = self._current()
        projected_daily = daily.cost + estimated_cost
        projected_monthly = monthly.cost + estimated_cost

        if projected_daily > self.daily_budget:
            logger.warning(f"Daily AI budget exceeded for {model}")
            return BudgetDecision(
                False,
                max(0.0, self.daily_budget - daily.cost),
                f"Daily budget exceeded. Current: ${daily.cost:.3f}, "
                f"Projected: ${projected_daily:.3f}, Budget: ${self.daily_budget}",
            )
        if projected_monthly > self.monthly_budget:
            logger.warning(f"Monthly AI budget exceeded for {model}")
            return BudgetDecision(
                False,
                max(0.0, self.monthly_budget - monthly.cost),
                f"Monthly budget exceeded. Current: ${monthly.cost:.3f}, "
                f"Projected: ${projected_monthly:.3f}, Budget: ${self.monthly_budget}",
            )

        if self.daily_budget and projected_daily > self.daily_budget * self.warning_ratio:
            logger.warning(
                f"Approaching daily AI budget: {projected_daily / self.daily_budget * 100:.1f}%"
            )
        if self.monthly_budget and projected_monthly > self.monthly_budget * self.critical_ratio:
            logger.warning(
                f"Critical monthly AI budget threshold: {projected_monthly / self.monthly_budget * 100:.1f}%"
            )

        return BudgetDecision(
            True,
            min(self.daily_budget - daily.cost, self.monthly_budget - monthly.cost),
        )

    def record_usage(self, model: str, cost: float) -> None:
        day, month = self._keys()
        self._daily.setdefault(day, UsageRecord(day)).add(model, cost)
        self._monthly.setdefault(month, UsageRecord(month)).add(model, cost)
        logger.debug(f"Recorded AI usage: {model} ${cost:.4f}")
        self._drop_old_windows()

    def reserve(self, model: str, estimated_cost: float) -> BudgetDecision:
        """
        Check the budget and book `estimated_cost` in the same step, so
        concurrent callers awaiting a model cannot all pass the check.
        Undo with release() when the call fails.
        """
        decision = self.check_budget(model, estimated_cost)
        if decision.allowed:
            self.record_usage(model, estimated_cost)
        return decision

    def release(self, model: str, cost: float) -> None:
        day, month = self._keys()
        for windows, key in ((self._daily, day), (self._monthly, month)):
            record = windows.get(key)
            if record is not None:
                record.remove(model, cost)
        logger.debug(f"Released AI budget reservation: {model} ${cost:.4f}")

    def _drop_old_windows(self) -> None:
        now = self._clock()
        day_cutoff = (now - timedelta(days=DAILY_RETENTION_DAYS)).strftime("%Y-%m-%d")
        month_index = now.year * 12 + now.month - 1 - MONTHLY_RETENTION_MONTHS
        month_cutoff = f"{month_index // 12:04d}-{month_index % 12 + 1:02d}"
        # Keys sort lexicographically in date order.
        for key in [k for k in self._daily if k < day_cutoff]:
            del self._daily[key]
        for key in [k for k in self._monthly if k < month_cutoff]:
            del self._monthly[key]

    def snapshot(self) -> dict:
        daily, monthly = self._current()
        return {
            "daily": daily.to_dict(),
            "monthly": monthly.to_dict(),
            "budget_status": {
                "daily_budget": self.daily_budget,
                "monthly_budget": self.monthly_budget,
                "daily_remaining": round(max(0.0, self.daily_budget - daily.cost), 6),
                "monthly_remaining": round(max(0.0, self.monthly_budget - monthly.cost), 6),
                "daily_percentage": round(daily.cost / self.daily_budget * 100, 2) if self.daily_budget else 0.0,
                "monthly_percentage": round(monthly.cost / self.monthly_budget * 100, 2) if self.monthly_budget else 0.0,
            },
            "tracked_days": len(self._daily),
            "tracked_months": len(self._monthly),
        }

    def reset(self) -> None:
        self._daily.clear()
        self._monthly.clear()


class RateLimiter:
    """Sliding-window request counter per model name."""

    def __init__(
        self,
        requests_per_minute: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.requests_per_minute = requests_per_minute or config.AI_RATE_LIMIT_PER_MINUTE
        self._clock = clock or time.monotonic
        self._windows: dict = collections.defaultdict(collections.deque)

    def _prune(self, model: str, now: float) -> collections.deque:
        window = self._windows[model]
        while window and now - window[0] >= WINDOW_SECONDS:
            window.popleft()
        return window

    def acquire(self, model: str) -> bool:
        """Take a slot for `model`. Returns False when the window is full."""
        now = self._clock()
        window = self._prune(model, now)
        if len(window) >= self.requests_per_minute:
            logger.warning(f"Rate limit reached for {model}: {len(window)}/{self.requests_per_minute} per minute")
            return False
        window.append(now)
        return True

    def snapshot(self) -> dict:
        now = self._clock()
        return {
            model: {"used": len(self._prune(model, now)), "limit": self.requests_per_minute}
            for model in list(self._windows)
        }

    def reset(self) -> None:
        self._windows.clear()
