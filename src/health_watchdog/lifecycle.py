"""Service lifecycle callbacks used by the watchdog on failure."""

from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from typing import Callable

from .config import WatchdogConfig

logger = logging.getLogger("health-watchdog")

COMMAND_TIMEOUT = 60


class ServiceLifecycle(ABC):
    """Stop/start pair for the supervised service.

    Both methods return ``(success, message)``. They are called from the
    watchdog's background thread.
    """

    @abstractmethod
    def stop_service(self) -> tuple[bool, str]:
        """Stop the service."""

    @abstractmethod
    def start_service(self) -> tuple[bool, str]:
        """Start the service."""


class ServiceController(ServiceLifecycle):
    """Control the service with configured shell commands."""

    def __init__(self, config: WatchdogConfig, dry_run: bool = False):
        self.config = config
        self.dry_run = dry_run or config.dry_run

    def start_service(self) -> tuple[bool, str]:
        cmd = self.config.start_command
        if not cmd:
            return False, "No start command configured"

        return self._run_command(cmd, "start")

    def stop_service(self) -> tuple[bool, str]:
        cmd = self.config.stop_command
        if not cmd:
            # Nothing to stop; the start command is expected to replace the service
            return True, "No stop command configured"

        return self._run_command(cmd, "stop")

    def _environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update({k: str(v) for k, v in self.config.env.items()})
        return env

    def _run_command(self, cmd: str, action: str) -> tuple[bool, str]:
        """Run a lifecycle command through the shell.

        The command's output is logged at debug level; on failure the last
        line of stderr (or stdout) is returned as the message.
        """
        if self.dry_run:
            logger.info(f"[DRY-RUN] Service {action}: {cmd}")
            return True, f"[DRY-RUN] Would execute: {cmd}"

        logger.debug(f"Service {action}: running {cmd!r}")
        try:
            result = subprocess.run(
                cmd,
                shell=True,
                capture_output=True,
                text=True,
                cwd=self.config.working_dir,
                env=self._environment(),
                timeout=COMMAND_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            return False, f"{cmd!r} did not finish within {COMMAND_TIMEOUT}s"
        except OSError as e:
            return False, f"cannot run {cmd!r}: {e}"

        for stream, output in (("stdout", result.stdout), ("stderr", result.stderr)):
            for line in output.splitlines():
                logger.debug(f"Service {action} {stream}: {line}")

        if result.returncode == 0:
            return True, f"{cmd!r} succeeded"

        lines = (result.stderr or result.stdout).strip().splitlines()
        detail = f": {lines[-1]}" if lines else ""
        return False, f"{cmd!r} exited with status {result.returncode}{detail}"


class LifecycleCallbacks(ServiceLifecycle):
    """Adapt a plain ``(stop, start)`` pair of callables."""

    def __init__(self, stop: Callable[[], tuple[bool, str]], start: Callable[[], tuple[bool, str]]):
        self._stop = stop
        self._start = start

    def stop_service(self) -> tuple[bool, str]:
        return self._stop()

    def start_service(self) -> tuple[bool, str]:
        return self._start()
