"""
Alert evaluation and delivery.

Converts analytics into notifications with per-rule cooldowns.

Rule Order:
1. Balance thresholds - critical, otherwise low
2. Depletion time - two hours, otherwise one day
3. High usage - current rate above twice the average session usage

Each rule is gated independently: within the cooldown window a rule
fires at most once, whatever the numbers in its message.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol

from rich.console import Console
from rich.panel import Panel

from .analytics import AlertInfo, AlertLevel, UsageAnalytics

log = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300.0
DEFAULT_LOW_THRESHOLD = 500
DEFAULT_CRITICAL_THRESHOLD = 100

_LOG_LEVELS = {
    AlertLevel.INFO: logging.INFO,
    AlertLevel.WARNING: logging.WARNING,
    AlertLevel.CRITICAL: logging.ERROR,
}

_PANEL_STYLES = {
    AlertLevel.INFO: "blue",
    AlertLevel.WARNING: "yellow",
    AlertLevel.CRITICAL: "red",
}


class Notifier(Protocol):
    """Delivers one alert. Raising signals a delivery failure."""

    def __call__(self, alert: AlertInfo) -> None:
        ...


class LoggingNotifier:
    """Delivers alerts to the log at a level matching their severity."""

    def __call__(self, alert: AlertInfo) -> None:
        log.log(_LOG_LEVELS[alert.level], "%s: %s", alert.title or alert.rule, alert.message)


class ConsoleNotifier:
    """Prints alerts as rich panels."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)

    def __call__(self, alert: AlertInfo) -> None:
        self.console.print(Panel(
            alert.message,
            title=alert.title or alert.rule,
            border_style=_PANEL_STYLES[alert.level],
        ))


def balance_update_notice(current: int, previous: Optional[int]) -> AlertInfo:
    """Informational notice describing how the balance moved."""
    if previous is None:
        message = f"Current balance: {current} credits"
    elif current < previous:
        message = f"Balance decreased by {previous - current} to {current} credits"
    elif current > previous:
        message = f"Balance increased by {current - previous} to {current} credits"
    else:
        message = f"Balance unchanged at {current} credits"
    return AlertInfo(level=AlertLevel.INFO, message=message, rule="balance_update", title="Balance Update")


def connection_notice(connected: bool) -> AlertInfo:
    """Notice for the billing source becoming unreachable or reachable again."""
    if connected:
        return AlertInfo(
            level=AlertLevel.INFO,
            message="Successfully reconnected to the billing portal",
            rule="connection_restored",
            title="Connection Restored",
        )
    return AlertInfo(
        level=AlertLevel.WARNING,
        message="Unable to connect to the billing portal",
        rule="connection_lost",
        title="Connection Lost",
    )


class AlertEngine:
    """Stateful alert evaluator with per-rule cooldowns.

    The cooldown map (rule id -> last delivery instant) lives for the
    lifetime of this instance and is guarded by a single lock, so the
    periodic cycle and manual refreshes never race on it.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        low_threshold: int = DEFAULT_LOW_THRESHOLD,
        critical_threshold: int = DEFAULT_CRITICAL_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the engine.

        Args:
            notifier: Delivery callable; defaults to LoggingNotifier
            low_threshold: Balance at or below which a warning fires
            critical_threshold: Balance at or below which a critical alert fires
            cooldown_seconds: Minimum seconds between deliveries of one rule
            clock: Monotonic clock in seconds (injectable for tests)

        Raises:
            ValueError: If thresholds or cooldown are invalid
        """
        if critical_threshold >= low_threshold:
            raise ValueError("critical_threshold must be less than low_threshold")
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds cannot be negative")

        self.notifier = notifier or LoggingNotifier()
        self.low_threshold = low_threshold
        self.critical_threshold = critical_threshold
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._last_fired: Dict[str, float] = {}
        self._lock = threading.Lock()

    def evaluate(self, analytics: UsageAnalytics, current_balance: int) -> List[AlertInfo]:
        """Alerts whose conditions hold, ignoring cooldowns."""
        alerts: List[AlertInfo] = []
        remaining = analytics.estimated_hours_remaining

        if current_balance <= self.critical_threshold:
            alerts.append(AlertInfo(
                level=AlertLevel.CRITICAL,
                message=f"Only {current_balance} credits remaining!",
                estimated_time_remaining=remaining,
                rule="critical_balance",
                title="Critical Balance Alert",
            ))
        elif current_balance <= self.low_threshold:
            alerts.append(AlertInfo(
                level=AlertLevel.WARNING,
                message=f"{current_balance} credits remaining",
                estimated_time_remaining=remaining,
                rule="low_balance",
                title="Low Balance Warning",
            ))

        if remaining is not None:
            message = f"Credits will run out in {remaining:.1f} hours at current usage rate"
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

        rate = analytics.usage_rate_per_hour
        if rate > 0 and rate > analytics.average_session_usage * 2.0:
            alerts.append(AlertInfo(
                level=AlertLevel.WARNING,
                message=(
                    f"Current usage rate ({rate:.1f}/hour) is significantly "
                    f"higher than average"
                ),
                estimated_time_remaining=remaining,
                rule="high_usage",
                title="High Usage Detected",
            ))

        return alerts

    def check_and_send(self, analytics: UsageAnalytics, current_balance: int) -> List[AlertInfo]:
        """Evaluate rules and deliver those outside their cooldown.

        A rule's cooldown starts only after a successful delivery. A failed
        delivery is logged and left for the next call to retry.

        Returns:
            Alerts that were delivered by this call
        """
        sent: List[AlertInfo] = []
        with self._lock:
            for alert in self.evaluate(analytics, current_balance):
                now = self._clock()
                last = self._last_fired.get(alert.rule)
                if last is not None and now - last < self._cooldown:
                    log.debug("Alert %s suppressed by cooldown", alert.rule)
                    continue
                try:
                    self.notifier(alert)
                except Exception:
                    log.exception("Failed to deliver alert %s", alert.rule)
                    continue
                self._last_fired[alert.rule] = now
                sent.append(alert)
        return sent

    def set_cooldown(self, seconds: float) -> None:
        """Change the cooldown window for subsequent checks."""
        if seconds < 0:
            raise ValueError("cooldown_seconds cannot be negative")
        with self._lock:
            self._cooldown = seconds

    def reset(self) -> None:
        """Forget every rule's last delivery time."""
        with self._lock:
            self._last_fired.clear()

    def notify(self, alert: AlertInfo) -> bool:
        """Deliver an informational notice immediately, bypassing cooldowns.

        Returns:
            True if the notifier accepted it
        """
        try:
            self.notifier(alert)
        except Exception:
            log.exception("Failed to deliver notice %s", alert.rule)
            return False
        return True
