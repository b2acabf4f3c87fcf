"""Tests for the watchdog scheduler."""

import logging
import threading
import time
from unittest.mock import MagicMock

import pytest

from health_watchdog.checks import BaseCheck, CheckResult, RunCheck
from health_watchdog.config import WatchdogConfig
from health_watchdog.errors import WatchdogAlreadyRunning, WatchdogConfigError, WatchdogError
from health_watchdog.lifecycle import LifecycleCallbacks, ServiceController
from health_watchdog.watchdog import Watchdog, setup_logging

INTERVAL = 0.1


class CountingCheck(BaseCheck):
    """Check that records how often it ran."""

    def __init__(self, ok=True, delay=0.0):
        self.ok = ok
        self.delay = delay
        self.calls = 0
        self.ran = threading.Event()

    def check(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        self.ran.set()
        if self.ok:
            return CheckResult(check=str(self), ok=True)
        return CheckResult(check=str(self), ok=False, reason=CheckResult.EXIT_STATUS, error="always fails")

    def __str__(self):
        return "counting"


class RaisingCheck(BaseCheck):
    def check(self):
        raise RuntimeError("unexpected")


def make_lifecycle(stop=(True, "stopped"), start=(True, "started")):
    lifecycle = MagicMock()
    lifecycle.stop_service.return_value = stop
    lifecycle.start_service.return_value = start
    return lifecycle


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def watchdog():
    wd = Watchdog()
    yield wd
    wd.stop()


class TestStartStop:
    """Test the scheduler state machine."""

    def test_stop_never_started(self):
        """Stop on an idle watchdog is a no-op."""
        wd = Watchdog()
        wd.stop()
        wd.stop()
        assert wd.running is False

    def test_stop_twice(self, watchdog):
        """Stopping twice in a row is a no-op the second time."""
        watchdog.start(make_lifecycle(), INTERVAL, CountingCheck())
        watchdog.stop()
        watchdog.stop()
        assert watchdog.running is False

    def test_start_returns_immediately(self, watchdog):
        """Start does not wait for the first tick."""
        check = CountingCheck()
        started = time.monotonic()
        assert watchdog.start(make_lifecycle(), 5, check) is True

        assert time.monotonic() - started < 1
        assert watchdog.running is True
        assert check.calls == 0

    def test_start_without_check(self, watchdog):
        """Nothing runs when no watchdog is configured."""
        assert watchdog.start(make_lifecycle(), INTERVAL) is False
        assert watchdog.running is False

    def test_start_twice_rejected(self, watchdog):
        watchdog.start(make_lifecycle(), INTERVAL, CountingCheck())
        with pytest.raises(WatchdogAlreadyRunning):
            watchdog.start(make_lifecycle(), INTERVAL, CountingCheck())

    def test_restart_after_stop(self, watchdog):
        """A stopped watchdog can be started again."""
        watchdog.start(make_lifecycle(), INTERVAL, CountingCheck())
        watchdog.stop()

        check = CountingCheck()
        watchdog.start(make_lifecycle(), INTERVAL, check)
        assert check.ran.wait(2)

    @pytest.mark.parametrize("interval", [0, -1])
    def test_invalid_interval(self, watchdog, interval):
        with pytest.raises(ValueError):
            watchdog.start(make_lifecycle(), interval, CountingCheck())

    def test_requires_lifecycle(self, watchdog):
        with pytest.raises(WatchdogError):
            watchdog.start(interval=INTERVAL, check=CountingCheck())


class TestTicks:
    """Test periodic execution."""

    def test_runs_check_on_interval(self, watchdog):
        """Check runs within one and a half intervals of start."""
        check = CountingCheck()
        watchdog.start(make_lifecycle(), 0.5, check)

        assert check.ran.wait(0.75)

    def test_no_ticks_after_stop(self, watchdog):
        """No tick happens once stop() has returned."""
        check = CountingCheck()
        watchdog.start(make_lifecycle(), INTERVAL, check)
        assert wait_for(lambda: check.calls >= 2)

        watchdog.stop()
        calls = check.calls
        time.sleep(INTERVAL * 3)

        assert check.calls == calls

    def test_slow_check_does_not_backlog(self, watchdog):
        """A check slower than the interval skips ticks instead of queueing them."""
        check = CountingCheck(delay=INTERVAL * 3)
        watchdog.start(make_lifecycle(), INTERVAL, check)

        time.sleep(INTERVAL * 10)
        watchdog.stop()

        # 1s of slow checks fits at most ~4 runs, never the 10 ticks elapsed
        assert 1 <= check.calls <= 5

    def test_stop_waits_for_running_check(self, watchdog):
        """Stop returns only after an in-flight check finishes."""
        check = CountingCheck(delay=0.3)
        watchdog.start(make_lifecycle(), INTERVAL, check)
        assert wait_for(lambda: check.calls >= 1)

        watchdog.stop()

        assert check.ran.is_set()
        assert watchdog.running is False


class TestFailureHandling:
    """Test the restart path."""

    def test_success_does_not_restart(self, watchdog):
        lifecycle = make_lifecycle()
        check = CountingCheck()
        watchdog.start(lifecycle, INTERVAL, check)
        assert wait_for(lambda: check.calls >= 2)
        watchdog.stop()

        lifecycle.stop_service.assert_not_called()
        lifecycle.start_service.assert_not_called()

    def test_failure_stops_then_starts(self, watchdog):
        """Each failing tick calls stop once and start once, in that order."""
        calls = []
        lifecycle = LifecycleCallbacks(
            stop=lambda: calls.append("stop") or (True, "stopped"),
            start=lambda: calls.append("start") or (True, "started"),
        )
        check = CountingCheck(ok=False)
        watchdog.start(lifecycle, INTERVAL, check)
        assert wait_for(lambda: len(calls) >= 4)
        watchdog.stop()

        assert calls.count("stop") == check.calls
        assert calls.count("start") == check.calls
        assert calls[:4] == ["stop", "start", "stop", "start"]

    def test_failed_stop_skips_start(self, watchdog):
        lifecycle = make_lifecycle(stop=(False, "permission denied"))
        check = CountingCheck(ok=False)
        watchdog.start(lifecycle, INTERVAL, check)
        assert wait_for(lambda: lifecycle.stop_service.call_count >= 2)
        watchdog.stop()

        lifecycle.start_service.assert_not_called()

    def test_raising_stop_skips_start(self, watchdog):
        lifecycle = make_lifecycle()
        lifecycle.stop_service.side_effect = OSError("boom")
        check = CountingCheck(ok=False)
        watchdog.start(lifecycle, INTERVAL, check)
        assert wait_for(lambda: lifecycle.stop_service.call_count >= 2)
        watchdog.stop()

        lifecycle.start_service.assert_not_called()
        assert watchdog.running is False

    def test_failed_start_keeps_looping(self, watchdog):
        lifecycle = make_lifecycle(start=(False, "port in use"))
        check = CountingCheck(ok=False)
        watchdog.start(lifecycle, INTERVAL, check)

        assert wait_for(lambda: lifecycle.start_service.call_count >= 3)

    def test_raising_check_restarts(self, watchdog):
        """A check that raises counts as a failure and the loop continues."""
        lifecycle = make_lifecycle()
        watchdog.start(lifecycle, INTERVAL, RaisingCheck())

        assert wait_for(lambda: lifecycle.start_service.call_count >= 2)

    def test_stop_from_callback(self, watchdog):
        """A lifecycle callback may stop the watchdog without deadlocking."""
        lifecycle = make_lifecycle()
        lifecycle.stop_service.side_effect = lambda: (watchdog.stop(), (True, "stopped"))[1]
        watchdog.start(lifecycle, INTERVAL, CountingCheck(ok=False))

        assert wait_for(lambda: not watchdog.running)
        watchdog.stop()
        assert lifecycle.stop_service.call_count == 1

    def test_logs_outcomes(self, watchdog, caplog):
        check = CountingCheck(ok=False)
        with caplog.at_level(logging.INFO, logger="health-watchdog"):
            watchdog.start(make_lifecycle(), INTERVAL, check)
            assert wait_for(lambda: check.calls >= 1)
            watchdog.stop()

        messages = [r.getMessage() for r in caplog.records]
        assert "running watchdog counting" in messages
        assert "watchdog returned an error: always fails" in messages


class TestCheckAndParse:
    """Test on-demand checks and parsing."""

    def test_check_passthrough(self):
        check = CountingCheck()
        result = Watchdog(check=check).check()

        assert result.healthy is True
        assert check.calls == 1

    def test_check_without_watchdog(self):
        with pytest.raises(WatchdogError):
            Watchdog().check()

    def test_parse(self):
        wd = Watchdog()
        check = wd.parse("run true")

        assert check == RunCheck(argv=("true",))
        assert wd.check_strategy is check

    def test_parse_error_keeps_check(self):
        wd = Watchdog()
        wd.parse("run true")
        with pytest.raises(WatchdogConfigError):
            wd.parse("run")

        assert wd.check_strategy == RunCheck(argv=("true",))

    def test_parse_empty(self):
        wd = Watchdog()
        assert wd.parse("") is None
        assert wd.start(make_lifecycle(), INTERVAL) is False

    def test_from_config(self):
        config = WatchdogConfig(
            watchdog="connect tcp://localhost:5432",
            interval=30,
            start_command="systemctl start postgresql",
        )
        wd = Watchdog.from_config(config)

        assert str(wd.check_strategy) == "connect to: localhost:5432 (tcp)"
        assert wd.interval == 30
        assert isinstance(wd.lifecycle, ServiceController)


class TestSetupLogging:
    """Test logging configuration."""

    def test_handlers_not_duplicated(self, tmp_path):
        log_file = tmp_path / "logs" / "watchdog.log"
        log = setup_logging("DEBUG", str(log_file))
        setup_logging("DEBUG", str(log_file))

        ours = [h for h in log.handlers if (h.get_name() or "").startswith("health-watchdog.")]
        try:
            assert len(ours) == 2
            assert log.level == logging.DEBUG
            assert log_file.parent.exists()
        finally:
            for handler in ours:
                log.removeHandler(handler)
                handler.close()
