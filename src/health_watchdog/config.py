"""Configuration management for Health Watchdog."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .errors import WatchdogConfigError
from .parser import parse_watchdog

DEFAULT_INTERVAL = 300


@dataclass
class WatchdogConfig:
    """Settings for one supervised service and its watchdog."""

    # Watchdog line, e.g. "get http://localhost:8080/health 10"
    watchdog: str = ""
    interval: int = DEFAULT_INTERVAL  # seconds between checks

    # Lifecycle commands
    stop_command: Optional[str] = None
    start_command: Optional[str] = None
    working_dir: Optional[str] = None
    env: dict = field(default_factory=dict)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    dry_run: bool = False

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "WatchdogConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WatchdogConfig":
        """Create configuration from dictionary."""
        config = cls()

        config.watchdog = data.get("watchdog") or config.watchdog
        config.interval = data.get("interval", config.interval)
        config.stop_command = data.get("stop_command", config.stop_command)
        config.start_command = data.get("start_command", config.start_command)
        config.working_dir = data.get("working_dir", config.working_dir)
        config.env = data.get("env", {}) or {}
        config.log_level = data.get("log_level", config.log_level)
        config.log_file = data.get("log_file", config.log_file)
        config.dry_run = data.get("dry_run", config.dry_run)

        return config

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        try:
            parse_watchdog(self.watchdog)
        except WatchdogConfigError as e:
            errors.append(f"watchdog: {e}")

        if not isinstance(self.interval, (int, float)) or self.interval <= 0:
            errors.append(f"interval must be a positive number of seconds, not {self.interval!r}")

        if self.watchdog and not self.start_command:
            errors.append("start_command required when a watchdog is configured")

        return errors

    def to_dict(self) -> dict[str, Any]:
        """Export configuration to dictionary."""
        return {
            "watchdog": self.watchdog,
            "interval": self.interval,
            "stop_command": self.stop_command,
            "start_command": self.start_command,
            "working_dir": self.working_dir,
            "env": dict(self.env),
            "log_level": self.log_level,
            "log_file": self.log_file,
            "dry_run": self.dry_run,
        }
