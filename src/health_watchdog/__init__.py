"""
Health Watchdog - periodic health checks for a supervised service

Runs one configured check (run a command, connect to a port, or GET a URL)
on an interval and stops then restarts the service when the check fails.
"""

__version__ = "1.0.0"

from .checks import CheckResult, ConnectCheck, GetCheck, RunCheck
from .config import WatchdogConfig
from .errors import WatchdogAlreadyRunning, WatchdogConfigError, WatchdogError
from .lifecycle import LifecycleCallbacks, ServiceController, ServiceLifecycle
from .parser import parse_watchdog
from .watchdog import Watchdog, setup_logging

__all__ = [
    "CheckResult",
    "ConnectCheck",
    "GetCheck",
    "LifecycleCallbacks",
    "RunCheck",
    "ServiceController",
    "ServiceLifecycle",
    "Watchdog",
    "WatchdogAlreadyRunning",
    "WatchdogConfig",
    "WatchdogConfigError",
    "WatchdogError",
    "parse_watchdog",
    "setup_logging",
]
