"""
Usage analytics over the balance history.

Turns the stored time series into consumption rates, a trend
classification and depletion forecasts using elementary statistics.

Every computation is a pure function of the records in the requested
window; the engine holds no state besides the repository it reads.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from statistics import fmean, pstdev
from typing import Any, Dict, List, Optional, Tuple

from ..storage.models import BalanceSnapshot, UsageRecord
from ..storage.repository import BalanceRepository

DEFAULT_WINDOW_HOURS = 24

# Slope dead-zone (credits per snapshot) absorbing noise around "stable".
TREND_SLOPE_THRESHOLD = 1.0
MIN_TREND_POINTS = 3


class UsageTrend(Enum):
    """Direction of usage derived from the balance regression slope."""
    INCREASING = "increasing"      # Balance falling, usage rising
    DECREASING = "decreasing"      # Balance rising, usage falling
    STABLE = "stable"
    INSUFFICIENT = "insufficient"  # Fewer than three snapshots


class AlertLevel(Enum):
    """Severity of an alert."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AlertInfo:
    """A single alert produced from analytics."""
    level: AlertLevel
    message: str
    estimated_time_remaining: Optional[float] = None
    rule: str = ""
    title: str = ""


@dataclass(frozen=True)
class BalanceDataPoint:
    """Chart point for the balance series."""
    timestamp: datetime
    balance: int


@dataclass(frozen=True)
class UsageDataPoint:
    """Chart point for the usage series."""
    timestamp: datetime
    usage_amount: int
    rate_per_hour: float


@dataclass(frozen=True)
class UsageAnalytics:
    """Derived statistics for one window of history."""
    current_balance: Optional[int]
    usage_rate_per_hour: float
    usage_rate_per_day: float
    estimated_hours_remaining: Optional[float]
    estimated_days_remaining: Optional[float]
    total_usage_period: int
    average_session_usage: float
    peak_usage_hour: Optional[int]
    trend: UsageTrend
    efficiency_score: float
    balance_history: List[BalanceDataPoint] = field(default_factory=list)
    usage_history: List[UsageDataPoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-JSON representation (enums by value, ISO timestamps)."""
        data = asdict(self)
        data["trend"] = self.trend.value
        for point in data["balance_history"] + data["usage_history"]:
            point["timestamp"] = point["timestamp"].isoformat()
        return data


def calculate_usage_rates(usage: List[UsageRecord]) -> Tuple[float, float]:
    """Aggregate consumption rate over the window.

    Rate is total usage divided by total elapsed minutes, not the mean of
    per-record rates, so long quiet intervals weigh in proportionally.

    Returns:
        (rate per hour, rate per day); both 0.0 without records
    """
    if not usage:
        return 0.0, 0.0

    total_usage = sum(r.usage_amount for r in usage)
    total_minutes = sum(r.duration_minutes for r in usage)
    if total_minutes == 0:
        return 0.0, 0.0

    per_hour = (total_usage / total_minutes) * 60.0
    return per_hour, per_hour * 24.0


def calculate_time_remaining(
    current_balance: Optional[int],
    usage_rate_per_hour: float,
) -> Tuple[Optional[float], Optional[float]]:
    """Hours and days until the balance reaches zero at the current rate."""
    if current_balance is None or usage_rate_per_hour <= 0:
        return None, None
    hours = current_balance / usage_rate_per_hour
    return hours, hours / 24.0


def calculate_trend(snapshots: List[BalanceSnapshot]) -> UsageTrend:
    """Classify the balance series by its least-squares slope.

    The slope is computed against the snapshot index rather than time, so
    irregular polling does not distort it.

    Args:
        snapshots: Snapshots ordered oldest first

    Returns:
        UsageTrend classification
    """
    if len(snapshots) < MIN_TREND_POINTS:
        return UsageTrend.INSUFFICIENT

    n = float(len(snapshots))
    sum_x = sum_y = sum_xy = sum_x2 = 0.0
    for i, snapshot in enumerate(snapshots):
        x = float(i)
        y = float(snapshot.amount)
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_x2 += x * x

    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)

    if slope < -TREND_SLOPE_THRESHOLD:
        return UsageTrend.INCREASING
    if slope > TREND_SLOPE_THRESHOLD:
        return UsageTrend.DECREASING
    return UsageTrend.STABLE


def calculate_efficiency_score(usage: List[UsageRecord]) -> float:
    """Score 0-100 rewarding consistent consumption rates.

    Uses the coefficient of variation of per-record rates, clamped to
    [0, 1]: identical rates score 100, CV >= 1 scores 0.
    """
    if not usage:
        return 0.0

    rates = [r.usage_amount / r.duration_minutes for r in usage]
    mean = fmean(rates)
    cv = pstdev(rates) / mean if mean > 0 else 1.0
    clamped = min(max(cv, 0.0), 1.0)
    return (1.0 - clamped) * 100.0


def calculate_average_session_usage(usage: List[UsageRecord]) -> float:
    """Arithmetic mean of usage_amount across records."""
    if not usage:
        return 0.0
    return fmean(r.usage_amount for r in usage)


def calculate_peak_usage_hour(usage: List[UsageRecord]) -> Optional[int]:
    """Hour of day (UTC) with the most total usage; lowest hour wins ties."""
    if not usage:
        return None

    hourly = [0] * 24
    for record in usage:
        hourly[record.timestamp.hour] += record.usage_amount

    peak = max(hourly)
    return hourly.index(peak)


class AnalyticsEngine:
    """Read-only analytics over a BalanceRepository."""

    def __init__(self, repository: BalanceRepository):
        self.repository = repository

    def usage_analytics(self, hours: int = DEFAULT_WINDOW_HOURS) -> UsageAnalytics:
        """Compute analytics for the last `hours` of history.

        Args:
            hours: Window size in hours (must be > 0)

        Returns:
            UsageAnalytics for the window

        Raises:
            ValueError: If hours is not positive
            StorageError: If the history cannot be read
        """
        if hours <= 0:
            raise ValueError("hours must be > 0")

        snapshots = self.repository.balance_history(hours)
        usage = self.repository.usage_history(hours)

        current_balance = snapshots[-1].amount if snapshots else None
        rate_per_hour, rate_per_day = calculate_usage_rates(usage)
        hours_remaining, days_remaining = calculate_time_remaining(current_balance, rate_per_hour)

        return UsageAnalytics(
            current_balance=current_balance,
            usage_rate_per_hour=rate_per_hour,
            usage_rate_per_day=rate_per_day,
            estimated_hours_remaining=hours_remaining,
            estimated_days_remaining=days_remaining,
            total_usage_period=hours,
            average_session_usage=calculate_average_session_usage(usage),
            peak_usage_hour=calculate_peak_usage_hour(usage),
            trend=calculate_trend(snapshots),
            efficiency_score=calculate_efficiency_score(usage),
            balance_history=[
                BalanceDataPoint(timestamp=s.timestamp, balance=s.amount) for s in snapshots
            ],
            usage_history=[
                UsageDataPoint(
                    timestamp=r.timestamp,
                    usage_amount=r.usage_amount,
                    rate_per_hour=r.rate_per_hour,
                )
                for r in usage
            ],
        )

    def predicted_usage(self, hours_ahead: float) -> float:
        """Credits expected to be consumed in the next `hours_ahead` hours.

        Extrapolates the 24-hour usage rate linearly.
        """
        if hours_ahead < 0:
            raise ValueError("hours_ahead cannot be negative")
        analytics = self.usage_analytics(DEFAULT_WINDOW_HOURS)
        return analytics.usage_rate_per_hour * hours_ahead

    def balance_alerts(self, low_threshold: int, critical_threshold: int) -> List[AlertInfo]:
        """Current alert conditions for the 24-hour window.

        Unlike the alert engine this applies no cooldown and delivers
        nothing; it only reports which conditions hold right now.

        Args:
            low_threshold: Balance at or below which a warning applies
            critical_threshold: Balance at or below which it is critical

        Returns:
            Alerts in rule order (balance first, then depletion time)
        """
        analytics = self.usage_analytics(DEFAULT_WINDOW_HOURS)
        balance = analytics.current_balance
        if balance is None:
            return []

        alerts: List[AlertInfo] = []
        remaining = analytics.estimated_hours_remaining

        if balance <= critical_threshold:
            alerts.append(AlertInfo(
                level=AlertLevel.CRITICAL,
                message=f"Critical: Only {balance} credits remaining!",
                estimated_time_remaining=remaining,
                rule="critical_balance",
                title="Critical Balance Alert",
            ))
        elif balance <= low_threshold:
            alerts.append(AlertInfo(
                level=AlertLevel.WARNING,
                message=f"Warning: {balance} credits remaining",
                estimated_time_remaining=remaining,
                rule="low_balance",
                title="Low Balance Warning",
            ))

        if remaining is not None:
            message = f"Credits will be depleted in {remaining:.1f} hours at current usage rate"
            if remaining <= 2.0:
                alerts.append(AlertInfo(
                    level=AlertLevel.CRITICAL,
                    message=message,
                    estimated_time_remaining=remaining,
                    rule="time_critical",
                    title="Credits Depleting Soon",
                ))
            elif remaining <= 24.0:
                alerts.append(AlertInfo(
                    level=AlertLevel.WARNING,
                    message=message,
                    estimated_time_remaining=remaining,
                    rule="time_warning",
                    title="Credits Running Low",
                ))

        return alerts
