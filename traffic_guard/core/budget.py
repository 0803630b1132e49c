"""
Traffic API budget tracking and admission.

Splits the provider's daily request quota between fetch categories and
admits or denies fetches against daily, hourly and per-category limits.

Admission order of precedence:
1. Daily limit - the provider's hard quota
2. Hourly limit - spreads requests across the day
3. Category allocation - keeps one kind of fetch from starving the others
"""

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from .errors import InvalidInput, LedgerCheckFailed
from traffic_guard.storage.models import UsageTotals
from traffic_guard.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 2500
DEFAULT_HOURLY_LIMIT = 104

OFF_PEAK_START_HOUR = 0
OFF_PEAK_END_HOUR = 6


class BudgetCategory(str, Enum):
    """Why a fetch is being made; each reason has its own slice of the quota."""
    ACTIVE = "active"      # A caller is planning a route right now
    PREFETCH = "prefetch"  # Off-peak warming of popular cells
    REFRESH = "refresh"    # Area refreshes for dashboards
    BUFFER = "buffer"      # Reserve for bursts


DEFAULT_ALLOCATION: Dict[BudgetCategory, float] = {
    BudgetCategory.ACTIVE: 0.40,
    BudgetCategory.PREFETCH: 0.24,
    BudgetCategory.REFRESH: 0.28,
    BudgetCategory.BUFFER: 0.08,
}


class AdmissionReason(Enum):
    """Outcome label of an admission check."""
    OK = "ok"
    DAILY = "daily"
    HOURLY = "hourly"
    CATEGORY = "category"
    UNCHECKED = "unchecked"  # Usage could not be read; failed open


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of asking the ledger whether a batch of fetches may proceed."""
    allowed: bool
    allowed_remaining: int
    reason: AdmissionReason
    message: str = ""
    daily_used: int = 0
    hourly_used: int = 0
    category_used: int = 0


@dataclass(frozen=True)
class BudgetStats:
    """Usage summary for one day."""
    date: str
    total_used: int
    remaining: int
    percent_used: float
    daily_limit: int
    hourly_limit: int
    per_category: Dict[str, int] = field(default_factory=dict)


def parse_category(category) -> BudgetCategory:
    """Coerce a category name or enum member.

    Raises:
        InvalidInput: If the category is unknown
    """
    try:
        return BudgetCategory(category)
    except ValueError:
        valid = [c.value for c in BudgetCategory]
        raise InvalidInput(f"Unknown budget category {category!r}, expected one of: {valid}")


def is_off_peak(hour: int) -> bool:
    """Whether ``hour`` (0-23) falls in the off-peak prefetch window."""
    return OFF_PEAK_START_HOUR <= hour < OFF_PEAK_END_HOUR


class BudgetLedger:
    """Shared request counter for the traffic provider.

    Counts live in the usage repository; the ledger only does arithmetic
    over them. Concurrent callers may overshoot the quota slightly because
    the check and the increments are not serialized.
    """

    def __init__(
        self,
        repository: UsageRepository,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        hourly_limit: int = DEFAULT_HOURLY_LIMIT,
        allocation: Optional[Dict[BudgetCategory, float]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the ledger.

        Args:
            repository: Usage counter storage
            daily_limit: Requests allowed per calendar day
            hourly_limit: Requests allowed per clock hour
            allocation: Fraction of the daily limit per category, summing to 1.0
            clock: Source of the current time

        Raises:
            ValueError: If limits are not positive or allocation is inconsistent
        """
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if hourly_limit <= 0:
            raise ValueError("hourly_limit must be > 0")

        allocation = {parse_category(k): v for k, v in (allocation or DEFAULT_ALLOCATION).items()}
        missing = set(BudgetCategory) - set(allocation)
        if missing:
            raise ValueError(f"Allocation missing categories: {sorted(c.value for c in missing)}")
        if any(v < 0 for v in allocation.values()):
            raise ValueError("Allocation fractions cannot be negative")
        if not math.isclose(sum(allocation.values()), 1.0, abs_tol=1e-6):
            raise ValueError(f"Allocation fractions must sum to 1.0, got {sum(allocation.values()):.4f}")

        self.repository = repository
        self.daily_limit = daily_limit
        self.hourly_limit = hourly_limit
        self.allocation = allocation
        self.clock = clock

    @classmethod
    def from_config(cls, config, repository: UsageRepository, clock=datetime.now) -> "BudgetLedger":
        """Build a ledger from a TrafficGuardConfig."""
        return cls(
            repository=repository,
            daily_limit=config.budget.daily_limit,
            hourly_limit=config.budget.hourly_limit,
            allocation=config.allocation.as_mapping(),
            clock=clock,
        )

    def category_limit(self, category) -> int:
        """Daily request allowance for one category."""
        return math.floor(self.daily_limit * self.allocation[parse_category(category)])

    def _period(self):
        now = self.clock()
        return now.date().isoformat(), now.hour

    def _read_totals(self, date: str, hour: int) -> UsageTotals:
        try:
            return self.repository.totals(date, hour)
        except sqlite3.Error as e:
            raise LedgerCheckFailed(f"Could not read usage for {date} {hour:02d}:00: {e}") from e

    def can_admit(self, category, requested_count: int = 1) -> AdmissionDecision:
        """Check whether ``requested_count`` fetches fit in every limit.

        Args:
            category: Budget category of the fetches
            requested_count: Number of provider calls about to be made

        Returns:
            AdmissionDecision naming the binding limit when denied. If usage
            cannot be read the decision fails open (allowed, 0 remaining).

        Raises:
            InvalidInput: If the category is unknown or the count is negative
        """
        category = parse_category(category)
        if requested_count < 0:
            raise InvalidInput("requested_count cannot be negative")

        date, hour = self._period()
        try:
            totals = self._read_totals(date, hour)
        except LedgerCheckFailed as e:
            logger.error("Budget check failed, allowing request: %s", e)
            return AdmissionDecision(
                allowed=True,
                allowed_remaining=0,
                reason=AdmissionReason.UNCHECKED,
                message="Budget check failed, allowing request",
            )

        category_used = totals.per_category.get(category.value, 0)
        category_limit = self.category_limit(category)

        daily_remaining = self.daily_limit - totals.daily
        hourly_remaining = self.hourly_limit - totals.hourly
        category_remaining = category_limit - category_used
        remaining = min(daily_remaining, hourly_remaining, category_remaining)

        if requested_count > daily_remaining:
            reason = AdmissionReason.DAILY
            message = f"Daily limit reached ({totals.daily}/{self.daily_limit})"
        elif requested_count > hourly_remaining:
            reason = AdmissionReason.HOURLY
            message = f"Hourly limit reached ({totals.hourly}/{self.hourly_limit})"
        elif requested_count > category_remaining:
            reason = AdmissionReason.CATEGORY
            message = f"Budget type '{category.value}' limit reached ({category_used}/{category_limit})"
        else:
            reason = AdmissionReason.OK
            message = ""

        decision = AdmissionDecision(
            allowed=reason is AdmissionReason.OK,
            allowed_remaining=max(remaining, 0),
            reason=reason,
            message=message,
            daily_used=totals.daily,
            hourly_used=totals.hourly,
            category_used=category_used,
        )
        if not decision.allowed:
            logger.warning(
                "Denied %d %s request(s): %s", requested_count, category.value, message
            )
        return decision

    def record(self, category, count: int = 1) -> None:
        """Add ``count`` provider calls to the current hour's counter.

        Recording failures are logged and dropped; an undercount only risks
        a small quota overshoot.

        Raises:
            InvalidInput: If the category is unknown or count is not positive
        """
        category = parse_category(category)
        if count <= 0:
            raise InvalidInput("count must be > 0")

        date, hour = self._period()
        try:
            self.repository.increment(date, hour, category.value, count)
        except sqlite3.Error as e:
            logger.error("Failed to record API usage [%s x%d]: %s", category.value, count, e)
            return

        logger.debug("Recorded %d request(s) [%s] at %02d:00", count, category.value, hour)

    def stats_for_today(self) -> Optional[BudgetStats]:
        """Usage summary for the current day, or None if usage can't be read."""
        date, hour = self._period()
        try:
            totals = self._read_totals(date, hour)
        except LedgerCheckFailed as e:
            logger.error("Failed to get usage stats: %s", e)
            return None

        per_category = {c.value: totals.per_category.get(c.value, 0) for c in BudgetCategory}
        return BudgetStats(
            date=date,
            total_used=totals.daily,
            remaining=self.daily_limit - totals.daily,
            percent_used=round(totals.daily / self.daily_limit * 100, 1),
            daily_limit=self.daily_limit,
            hourly_limit=self.hourly_limit,
            per_category=per_category,
        )

    def is_off_peak(self, hour: Optional[int] = None) -> bool:
        """Off-peak check for ``hour``, defaulting to the current hour."""
        if hour is None:
            hour = self.clock().hour
        return is_off_peak(hour)

    def reset_daily(self) -> Optional[BudgetStats]:
        """Day-rollover hook.

        Stored counters are left alone; a new date simply stops matching
        yesterday's rows. Logs and returns the summary of the day ending.
        """
        logger.info("Resetting daily API budget counters")
        stats = self.stats_for_today()
        if stats is not None:
            logger.info(
                "Day usage: %d/%d (%.1f%%)", stats.total_used, stats.daily_limit, stats.percent_used
            )
        return stats
