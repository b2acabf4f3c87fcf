"""Periodic watchdog that restarts a service when its health check fails."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Optional

from .checks import BaseCheck, CheckResult
from .config import DEFAULT_INTERVAL, WatchdogConfig
from .errors import WatchdogAlreadyRunning, WatchdogError
from .lifecycle import ServiceController, ServiceLifecycle
from .parser import parse_watchdog

logger = logging.getLogger("health-watchdog")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure the watchdog logger.

    Safe to call repeatedly: handlers installed by a previous call are
    replaced, handlers added by the application are left alone.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        if (handler.get_name() or "").startswith("health-watchdog."):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler
    console = logging.StreamHandler()
    console.set_name("health-watchdog.console")
    console.setLevel(log_level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    # File handler
    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.set_name("health-watchdog.file")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except PermissionError:
            logger.warning(f"Cannot write to log file: {log_file}")

    return logger


class Watchdog:
    """Run a health check on an interval and restart the service on failure.

    The check runs on a single background thread. Ticks never overlap: when a
    check outlasts the interval, at most one tick is run immediately after it
    and the remaining missed ticks are dropped. ``stop()`` is only observed
    between ticks.
    """

    def __init__(
        self,
        check: Optional[BaseCheck] = None,
        lifecycle: Optional[ServiceLifecycle] = None,
        interval: float = DEFAULT_INTERVAL,
        log: Optional[logging.Logger] = None,
    ):
        self.check_strategy = check
        self.lifecycle = lifecycle
        self.interval = interval
        self.logger = log or logger

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @classmethod
    def from_config(cls, config: WatchdogConfig) -> "Watchdog":
        """Build a watchdog whose lifecycle runs the configured commands."""
        return cls(
            check=parse_watchdog(config.watchdog),
            lifecycle=ServiceController(config),
            interval=config.interval,
        )

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def parse(self, text: str) -> Optional[BaseCheck]:
        """Replace the check with one parsed from ``text``.

        On error the current check is kept.
        """
        self.check_strategy = parse_watchdog(text)
        return self.check_strategy

    def check(self) -> CheckResult:
        """Run the configured check once on the calling thread."""
        if self.check_strategy is None:
            raise WatchdogError("no watchdog configured")
        return self.check_strategy.check()

    def start(
        self,
        lifecycle: Optional[ServiceLifecycle] = None,
        interval: Optional[float] = None,
        check: Optional[BaseCheck] = None,
    ) -> bool:
        """Start the background loop.

        Returns False without starting anything when no check is configured.
        Raises WatchdogAlreadyRunning if the loop is already active.
        """
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise WatchdogAlreadyRunning("watchdog is already running")

            if check is not None:
                self.check_strategy = check
            if lifecycle is not None:
                self.lifecycle = lifecycle
            if interval is not None:
                self.interval = interval

            if self.interval is None or self.interval <= 0:
                raise ValueError(f"watchdog interval must be positive, not {self.interval!r}")
            if self.check_strategy is None:
                self.logger.info("no watchdog configured")
                return False
            if self.lifecycle is None:
                raise WatchdogError("watchdog requires a service lifecycle to start")

            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self.check_strategy, self.lifecycle, self.interval, self._stop_event),
                name="health-watchdog",
                daemon=True,
            )
            self._thread.start()

        self.logger.debug(f"watchdog started, checking every {self.interval}s: {self.check_strategy}")
        return True

    def stop(self):
        """Stop the background loop and wait for it to exit.

        A no-op when the loop is not running. Called from the loop's own
        thread (e.g. inside a lifecycle callback) it only requests the stop.
        """
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            if thread is None:
                return
            stop_event.set()

        if thread is threading.current_thread():
            return

        thread.join()

        with self._lock:
            if self._thread is thread:
                self._thread = None
                self._stop_event = None

        self.logger.debug("watchdog stopped")

    def _run(
        self,
        strategy: BaseCheck,
        lifecycle: ServiceLifecycle,
        interval: float,
        stop_event: threading.Event,
    ):
        next_tick = time.monotonic() + interval
        while not stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self._tick(strategy, lifecycle)

            next_tick += interval
            now = time.monotonic()
            if next_tick < now:
                # Keep one pending tick, drop the rest
                next_tick += ((now - next_tick) // interval) * interval

    def _tick(self, strategy: BaseCheck, lifecycle: ServiceLifecycle):
        self.logger.info(f"running watchdog {strategy}")

        try:
            result = strategy.check()
        except Exception as e:
            self.logger.exception(f"watchdog {strategy} raised")
            result = CheckResult(check=str(strategy), ok=False, error=str(e))

        if result.healthy:
            self.logger.info("watchdog finished successfully")
            return

        self.logger.error(f"watchdog returned an error: {result.error}")
        self._restart(lifecycle)

    def _restart(self, lifecycle: ServiceLifecycle):
        stopped, message = self._call(lifecycle.stop_service, "stop")
        if not stopped:
            self.logger.error(f"Not starting service, stop failed: {message}")
            return

        self._call(lifecycle.start_service, "start")

    def _call(self, callback, action: str) -> tuple[bool, str]:
        try:
            success, message = callback()
        except Exception as e:
            self.logger.exception(f"Service {action} raised")
            return False, str(e)

        if success:
            self.logger.info(f"Service {action}: {message}")
        else:
            self.logger.error(f"Service {action} failed: {message}")
        return success, message
