"""Exceptions raised by Health Watchdog."""


class WatchdogError(Exception):
    """Base class for watchdog errors."""


class WatchdogConfigError(WatchdogError, ValueError):
    """Invalid watchdog configuration string or settings."""


class WatchdogAlreadyRunning(WatchdogError, RuntimeError):
    """Raised when starting a watchdog whose loop is already active."""
