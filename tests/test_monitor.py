"""
Tests for the monitoring cycle and background thread.
"""

import os
import tempfile
import threading
import time
from unittest.mock import MagicMock

import httpx

from credit_monitor.core.alerts import AlertEngine
from credit_monitor.core.errors import AuthError, ExtractionError, StorageError
from credit_monitor.core.monitor import BalanceMonitor
from credit_monitor.extraction.engine import BalanceExtractor, ExtractionResult
from credit_monitor.storage.repository import BalanceRepository


class TestMonitorCycle:
    """Test fetch -> store -> analyze -> alert."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo = BalanceRepository(os.path.join(self.temp_dir.name, "test.db"))
        self.repo.initialize_schema()
        self.extractor = MagicMock()
        self.notifier = MagicMock()
        self.clock_now = 0.0
        self.monitor = BalanceMonitor(
            extractor=self.extractor,
            repository=self.repo,
            credential="tok",
            alert_engine=AlertEngine(notifier=self.notifier),
            clock=lambda: self.clock_now,
        )

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_manual_refresh_stores_and_notifies(self):
        self.extractor.fetch_balance_result.return_value = ExtractionResult(2000, "portal_api")
        listener = MagicMock()
        self.monitor.on_change(listener)

        result = self.monitor.manual_refresh()

        assert result.ok
        assert result.balance == 2000
        assert result.analytics.current_balance == 2000
        assert self.monitor.current_balance() == 2000
        assert self.repo.latest_balance().source == "portal_api"
        listener.assert_called_once_with(result)

    def test_low_balance_sends_alert(self):
        self.extractor.fetch_balance_result.return_value = ExtractionResult(80, "browser")

        result = self.monitor.run_cycle()

        assert [a.rule for a in result.alerts] == ["critical_balance"]
        delivered = [call.args[0].rule for call in self.notifier.call_args_list]
        assert delivered == ["balance_update", "critical_balance"]

    def test_failed_cycle_keeps_last_balance(self):
        self.extractor.fetch_balance_result.return_value = ExtractionResult(1500, "portal_api")
        self.monitor.run_cycle()
        self.extractor.fetch_balance_result.side_effect = ExtractionError("all strategies exhausted")

        result = self.monitor.run_cycle()

        assert not result.ok
        assert not result.auth_failed
        assert self.monitor.current_balance() == 1500

    def test_auth_failure_is_flagged(self):
        self.extractor.fetch_balance_result.side_effect = AuthError("rejected")
        listener = MagicMock()
        self.monitor.on_change(listener)

        result = self.monitor.run_cycle()

        assert result.auth_failed
        assert self.repo.latest_balance() is None
        listener.assert_called_once_with(result)

    def test_storage_failure_still_alerts(self):
        self.repo.record_balance(900)
        self.repo.record_balance = MagicMock(side_effect=StorageError("disk full"))
        self.extractor.fetch_balance_result.return_value = ExtractionResult(50, "portal_api")

        result = self.monitor.run_cycle()

        assert result.balance == 50
        assert result.analytics is not None
        assert "critical_balance" in [a.rule for a in result.alerts]

    def test_alerts_disabled(self):
        self.monitor.alerts_enabled = False
        self.extractor.fetch_balance_result.return_value = ExtractionResult(10, "portal_api")

        assert self.monitor.run_cycle().alerts == []
        self.notifier.assert_not_called()

    def test_listener_failure_does_not_break_cycle(self):
        self.extractor.fetch_balance_result.return_value = ExtractionResult(700, "portal_api")
        self.monitor.on_change(MagicMock(side_effect=RuntimeError("ui gone")))

        assert self.monitor.run_cycle().ok

    def test_prune_runs_once_per_interval(self):
        self.repo.prune = MagicMock(return_value=(0, 0))

        self.monitor.prune_if_due()
        self.clock_now += 3600
        self.monitor.prune_if_due()
        self.clock_now += 24 * 3600
        self.monitor.prune_if_due()

        assert self.repo.prune.call_count == 2
        self.repo.prune.assert_called_with(30)

    def test_queries_delegate_to_analytics(self):
        self.extractor.fetch_balance_result.return_value = ExtractionResult(400, "portal_api")
        self.monitor.manual_refresh()

        assert self.monitor.usage_analytics(24).current_balance == 400
        assert [a.rule for a in self.monitor.balance_alerts(500, 100)] == ["low_balance"]
        assert self.monitor.predicted_usage(5) == 0.0

    def test_unexpected_fetch_error_is_reported(self):
        self.extractor.fetch_balance_result.side_effect = RuntimeError("parser bug")

        result = self.monitor.run_cycle()

        assert not result.ok
        assert "parser bug" in result.error

    def test_unexpected_commit_error_is_reported(self):
        self.repo.record_balance = MagicMock(side_effect=ValueError("amount cannot be negative"))
        self.extractor.fetch_balance_result.return_value = ExtractionResult(500, "portal_api")

        result = self.monitor.run_cycle()

        assert not result.ok
        assert "amount cannot be negative" in result.error

    def test_negative_api_balance_is_never_stored(self):
        def handler(request):
            if request.url.path == "/api/v1/customer_from_link":
                return httpx.Response(200, json={
                    "customer": {"id": "cus_1", "ledger_pricing_units": [{"id": "pu_1"}]}
                })
            if request.url.path.endswith("/ledger_summary"):
                return httpx.Response(200, json={"credits_balance": "-250.0"})
            return httpx.Response(404)

        self.monitor.extractor = BalanceExtractor(
            base_url="https://portal.example.com",
            use_browser=False,
            retry_attempts=1,
            transport=httpx.MockTransport(handler),
            sleep=MagicMock(),
        )

        result = self.monitor.run_cycle()

        assert not result.ok
        assert self.repo.latest_balance() is None


class TestMonitorNotices:
    """Test balance-change and connection notices."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo = BalanceRepository(os.path.join(self.temp_dir.name, "test.db"))
        self.repo.initialize_schema()
        self.extractor = MagicMock()
        self.notifier = MagicMock()
        self.monitor = BalanceMonitor(
            extractor=self.extractor,
            repository=self.repo,
            credential="tok",
            alert_engine=AlertEngine(notifier=self.notifier),
        )

    def teardown_method(self):
        self.temp_dir.cleanup()

    def _cycle(self, outcome):
        if isinstance(outcome, Exception):
            self.extractor.fetch_balance_result.side_effect = outcome
        else:
            self.extractor.fetch_balance_result.side_effect = None
            self.extractor.fetch_balance_result.return_value = ExtractionResult(outcome, "portal_api")
        return self.monitor.run_cycle()

    def test_first_reading_and_changes_are_announced(self):
        first = self._cycle(2000)
        second = self._cycle(1500)
        third = self._cycle(1500)

        assert [n.message for n in first.notices] == ["Current balance: 2000 credits"]
        assert [n.message for n in second.notices] == ["Balance decreased by 500 to 1500 credits"]
        assert third.notices == []

    def test_connection_lost_and_restored(self):
        self._cycle(2000)
        lost = self._cycle(ExtractionError("timeout"))
        still_down = self._cycle(ExtractionError("timeout"))
        restored = self._cycle(2000)

        assert [n.rule for n in lost.notices] == ["connection_lost"]
        assert still_down.notices == []
        assert [n.rule for n in restored.notices] == ["connection_restored"]

    def test_failure_before_any_success_is_not_a_lost_connection(self):
        assert self._cycle(ExtractionError("timeout")).notices == []

    def test_notices_follow_alerts_enabled(self):
        self.monitor.alerts_enabled = False

        assert self._cycle(2000).notices == []
        self.notifier.assert_not_called()


class TestCommitSerialization:
    """A manual refresh racing a periodic tick commits one after the other."""

    def test_concurrent_commits_do_not_interleave(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = BalanceRepository(os.path.join(temp_dir, "test.db"))
            repo.initialize_schema()
            notifier = MagicMock()
            both_fetched = threading.Barrier(2, timeout=5)

            def fetch(credential):
                both_fetched.wait()
                return ExtractionResult(300, "portal_api")

            extractor = MagicMock()
            extractor.fetch_balance_result.side_effect = fetch
            monitor = BalanceMonitor(extractor, repo, credential="tok",
                                     alert_engine=AlertEngine(notifier=notifier))

            active = []
            overlaps = []
            record = repo.record_balance

            def slow_record(*args, **kwargs):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.05)
                try:
                    return record(*args, **kwargs)
                finally:
                    active.pop()

            repo.record_balance = slow_record
            results = []
            threads = [
                threading.Thread(target=lambda: results.append(monitor.manual_refresh())),
                threading.Thread(target=lambda: results.append(monitor.run_cycle())),
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

            assert len(results) == 2
            assert all(result.ok for result in results)
            assert overlaps == []
            assert len(repo.balance_history(24)) == 2

            delivered = [call.args[0].rule for call in notifier.call_args_list]
            assert delivered.count("low_balance") == 1
            assert delivered.count("balance_update") == 1


class TestMonitorThread:
    """Test the background loop lifecycle."""

    def test_start_runs_a_cycle_and_stop_joins(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            repo = BalanceRepository(os.path.join(temp_dir, "test.db"))
            repo.initialize_schema()
            extractor = MagicMock()
            extractor.fetch_balance_result.return_value = ExtractionResult(1000, "portal_api")

            monitor = BalanceMonitor(extractor, repo, credential="tok", interval=3600,
                                     alert_engine=AlertEngine(notifier=MagicMock()))
            cycled = threading.Event()
            monitor.on_change(lambda result: cycled.set())

            monitor.start()
            try:
                assert cycled.wait(timeout=5)
            finally:
                monitor.stop()

            assert repo.latest_balance().amount == 1000

    def _monitor(self, temp_dir, fetch):
        repo = BalanceRepository(os.path.join(temp_dir, "test.db"))
        repo.initialize_schema()
        extractor = MagicMock()
        extractor.fetch_balance_result.side_effect = fetch
        return BalanceMonitor(extractor, repo, credential="tok", interval=3600,
                              alert_engine=AlertEngine(notifier=MagicMock()))

    def test_unexpected_error_does_not_end_the_loop(self):
        outcomes = [RuntimeError("boom"), ExtractionResult(800, "portal_api")]

        with tempfile.TemporaryDirectory() as temp_dir:
            monitor = self._monitor(temp_dir, lambda credential: _next(outcomes))
            recovered = threading.Event()

            def on_change(result):
                if result.ok:
                    recovered.set()
                else:
                    monitor.request_refresh()

            monitor.on_change(on_change)
            monitor.start()
            try:
                assert recovered.wait(timeout=5)
            finally:
                monitor.stop()

    def test_refresh_requested_mid_cycle_is_not_lost(self):
        calls = []

        with tempfile.TemporaryDirectory() as temp_dir:
            second_cycle = threading.Event()

            def fetch(credential):
                calls.append(credential)
                if len(calls) == 1:
                    monitor.request_refresh()
                else:
                    second_cycle.set()
                return ExtractionResult(1000, "portal_api")

            monitor = self._monitor(temp_dir, fetch)
            monitor.start()
            try:
                assert second_cycle.wait(timeout=5)
            finally:
                monitor.stop()

    def test_stop_during_cycle_ends_thread(self):
        fetching = threading.Event()
        proceed = threading.Event()

        def fetch(credential):
            fetching.set()
            proceed.wait(timeout=5)
            return ExtractionResult(1000, "portal_api")

        with tempfile.TemporaryDirectory() as temp_dir:
            monitor = self._monitor(temp_dir, fetch)
            monitor.start()
            assert fetching.wait(timeout=5)

            stopper = threading.Thread(target=monitor.stop)
            stopper.start()
            time.sleep(0.1)
            proceed.set()
            stopper.join(timeout=10)

            assert not monitor._thread.is_alive()


def _next(outcomes):
    outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
    if isinstance(outcome, Exception):
        raise outcome
    return outcome
