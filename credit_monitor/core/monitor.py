"""
Background thread that drives the monitoring cycle at regular intervals.

CYCLE:
- fetch: extraction with its own bounded retry loop (slow, runs unlocked)
- commit: store the snapshot, recompute analytics, evaluate alerts,
  notify listeners. Commits are serialized so a periodic tick arriving
  during a manual refresh is processed after the refresh finishes.

RECOVERY LOGIC:
- A failed cycle is logged and the loop waits for the next tick. Unexpected
  exceptions are logged with their traceback and count as failed cycles.
- Backs off exponentially on repeated errors (up to 5 minutes).
- Storage failures are logged; alerting still runs from existing history.

NOTICES:
- Balance changes and connection lost/restored transitions are sent
  through the alert notifier without cooldown.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .alerts import AlertEngine, balance_update_notice, connection_notice
from .analytics import DEFAULT_WINDOW_HOURS, AlertInfo, AnalyticsEngine, UsageAnalytics
from .errors import AuthError, ExtractionError, MonitorError, StorageError
from ..extraction.engine import BalanceExtractor, ExtractionResult
from ..storage.repository import BalanceRepository

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60
MAX_BACKOFF_SECONDS = 300
# Consecutive failures tolerated before the interval starts doubling
_BACKOFF_AFTER = 3


@dataclass(frozen=True)
class CycleResult:
    """What one monitoring cycle produced."""
    balance: Optional[int] = None
    source: Optional[str] = None
    analytics: Optional[UsageAnalytics] = None
    alerts: List[AlertInfo] = field(default_factory=list)
    notices: List[AlertInfo] = field(default_factory=list)
    error: Optional[str] = None
    auth_failed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class BalanceMonitor:
    """Background daemon thread that polls the balance and raises alerts."""

    def __init__(
        self,
        extractor: BalanceExtractor,
        repository: BalanceRepository,
        credential: str,
        alert_engine: Optional[AlertEngine] = None,
        interval: int = DEFAULT_POLL_INTERVAL,
        retention_days: int = 30,
        prune_interval_hours: float = 24.0,
        alerts_enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.extractor = extractor
        self.repository = repository
        self.analytics = AnalyticsEngine(repository)
        self.alert_engine = alert_engine or AlertEngine()
        self.alerts_enabled = alerts_enabled
        self._credential = credential
        self._interval = interval
        self._retention_days = retention_days
        self._prune_interval = prune_interval_hours * 3600.0
        self._clock = clock
        self._last_prune: Optional[float] = None
        self._connected: Optional[bool] = None
        self._listeners: List[Callable[[CycleResult], None]] = []
        self._commit_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._force_poll = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Lifecycle

    def start(self) -> None:
        """Start the background polling thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="BalanceMonitor")
        self._thread.start()
        log.info("Balance monitor started (poll every %ds)", self._interval)

    def stop(self) -> None:
        """Signal the monitor to stop and wait for the thread to exit."""
        self._stop_event.set()
        self._force_poll.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Balance monitor stopped")

    def request_refresh(self) -> None:
        """Wake the loop for an immediate poll."""
        self._force_poll.set()

    def on_change(self, callback: Callable[[CycleResult], None]) -> None:
        """Register a listener called after every committed cycle."""
        self._listeners.append(callback)

    # Consumer-facing queries

    def current_balance(self) -> Optional[int]:
        """Latest stored balance, or None before the first snapshot."""
        snapshot = self.repository.latest_balance()
        return snapshot.amount if snapshot else None

    def usage_analytics(self, hours: int = DEFAULT_WINDOW_HOURS) -> UsageAnalytics:
        return self.analytics.usage_analytics(hours)

    def balance_alerts(self, low_threshold: int, critical_threshold: int) -> List[AlertInfo]:
        return self.analytics.balance_alerts(low_threshold, critical_threshold)

    def predicted_usage(self, hours_ahead: float) -> float:
        return self.analytics.predicted_usage(hours_ahead)

    # Cycles

    def manual_refresh(self) -> CycleResult:
        """Fetch and commit now, in the caller's thread.

        Raises:
            AuthError: If the credential is rejected
            ExtractionError: If the balance could not be obtained
        """
        try:
            result = self.extractor.fetch_balance_result(self._credential)
        except MonitorError:
            with self._commit_lock:
                self._connection_changed(False)
            raise
        return self._commit(result)

    def run_cycle(self) -> CycleResult:
        """One periodic cycle; failures are reported in the result, never raised."""
        try:
            result = self.extractor.fetch_balance_result(self._credential)
        except AuthError as e:
            log.error("Credential rejected, re-authentication required: %s", e)
            return self._failed_cycle(str(e), auth_failed=True)
        except ExtractionError as e:
            log.warning("Balance fetch failed: %s", e)
            return self._failed_cycle(str(e))
        except Exception as e:
            log.exception("Unexpected error while fetching the balance")
            return self._failed_cycle(f"Unexpected error: {e}")

        try:
            return self._commit(result)
        except Exception as e:
            log.exception("Unexpected error while committing balance %s", result.balance)
            return self._failed_cycle(f"Unexpected error: {e}")

    def _failed_cycle(self, error: str, auth_failed: bool = False) -> CycleResult:
        with self._commit_lock:
            notices = self._connection_changed(False)
        cycle = CycleResult(error=error, auth_failed=auth_failed, notices=notices)
        self._notify(cycle)
        return cycle

    def _commit(self, result: ExtractionResult) -> CycleResult:
        with self._commit_lock:
            notices = self._connection_changed(True)
            previous = self._previous_balance()
            try:
                self.repository.record_balance(result.balance, source=result.source)
            except StorageError as e:
                log.error("Failed to store balance %d: %s", result.balance, e)

            if self.alerts_enabled and previous != result.balance:
                notice = balance_update_notice(result.balance, previous)
                if self.alert_engine.notify(notice):
                    notices.append(notice)

            analytics = None
            try:
                analytics = self.analytics.usage_analytics(DEFAULT_WINDOW_HOURS)
            except StorageError as e:
                log.error("Failed to compute analytics: %s", e)

            sent: List[AlertInfo] = []
            if analytics is not None and self.alerts_enabled:
                sent = self.alert_engine.check_and_send(analytics, result.balance)

            cycle = CycleResult(
                balance=result.balance,
                source=result.source,
                analytics=analytics,
                alerts=sent,
                notices=notices,
            )
            self._notify(cycle)
        return cycle

    def _previous_balance(self) -> Optional[int]:
        try:
            snapshot = self.repository.latest_balance()
        except StorageError as e:
            log.error("Failed to read the previous balance: %s", e)
            return None
        return snapshot.amount if snapshot else None

    def _connection_changed(self, connected: bool) -> List[AlertInfo]:
        """Record reachability; notify on lost/restored transitions. Caller holds the commit lock."""
        previous, self._connected = self._connected, connected
        if previous is None or previous == connected or not self.alerts_enabled:
            return []
        notice = connection_notice(connected)
        return [notice] if self.alert_engine.notify(notice) else []

    def _notify(self, cycle: CycleResult) -> None:
        for listener in self._listeners:
            try:
                listener(cycle)
            except Exception:
                log.exception("Change listener failed")

    def prune_if_due(self) -> None:
        """Delete expired history once per prune interval."""
        now = self._clock()
        if self._last_prune is not None and now - self._last_prune < self._prune_interval:
            return
        self._last_prune = now
        try:
            self.repository.prune(self._retention_days)
        except StorageError as e:
            log.error("Failed to prune history: %s", e)

    def _run(self) -> None:
        """Main loop: prune, poll, commit, sleep."""
        consecutive_errors = 0
        while not self._stop_event.is_set():
            # Cleared before the cycle so a refresh requested mid-cycle is kept
            self._force_poll.clear()
            try:
                self.prune_if_due()
                cycle = self.run_cycle()
            except Exception as e:
                log.exception("Monitoring cycle crashed")
                cycle = CycleResult(error=str(e))

            if cycle.error:
                consecutive_errors += 1
                log.warning("Cycle error (%d consecutive): %s", consecutive_errors, cycle.error)
            else:
                if consecutive_errors > 0:
                    log.info("Cycle recovered after %d errors", consecutive_errors)
                consecutive_errors = 0

            sleep_time = self._interval
            if consecutive_errors > _BACKOFF_AFTER:
                sleep_time = min(
                    self._interval * (2 ** (consecutive_errors - _BACKOFF_AFTER)),
                    max(MAX_BACKOFF_SECONDS, self._interval),
                )

            if self._stop_event.is_set():
                break
            self._force_poll.wait(sleep_time)
