"""Parse watchdog configuration strings into checks.

A watchdog is configured with a single line whose first word selects the
check type::

    run <command> [args...]
    connect <tcp|udp>://<host>:<port> [timeout]
    get <http|https>://<url> [timeout]

Arguments are split like a POSIX shell, so quoted arguments keep their spaces.
"""

from __future__ import annotations

import re
import shlex
from typing import Optional
from urllib.parse import urlsplit

from .checks import DEFAULT_TIMEOUT, BaseCheck, ConnectCheck, GetCheck, RunCheck, split_host_port
from .errors import WatchdogConfigError

WATCHDOG_TYPES = ("run", "connect", "get")

_INTEGER = re.compile(r"^[+-]?\d+$")


def parse_watchdog(text: Optional[str]) -> Optional[BaseCheck]:
    """Build a check from a configuration string.

    Returns None when ``text`` is empty (no watchdog configured). Raises
    WatchdogConfigError describing the first violated constraint otherwise.
    """
    if not text or not text.strip():
        return None

    try:
        args = shlex.split(text)
    except ValueError as e:
        raise WatchdogConfigError(f"invalid watchdog {text!r}: {e}") from e

    kind, params = args[0], args[1:]
    if kind == "run":
        return _parse_run(params)
    if kind == "connect":
        return _parse_connect(params)
    if kind == "get":
        return _parse_get(params)

    raise WatchdogConfigError(
        f"invalid watchdog {text!r} - available watchdogs are run, connect and get"
    )


def _parse_run(params: list[str]) -> RunCheck:
    if not params:
        raise WatchdogConfigError("run watchdog requires at least one argument")
    return RunCheck(argv=tuple(params))


def _parse_connect(params: list[str]) -> ConnectCheck:
    if len(params) not in (1, 2):
        raise WatchdogConfigError(
            f"connect watchdog requires one or two arguments, {len(params)} given"
        )

    try:
        url = urlsplit(params[0])
    except ValueError as e:
        raise WatchdogConfigError(f"invalid connect URL {params[0]!r}: {e}") from e

    if url.scheme not in ("tcp", "udp"):
        raise WatchdogConfigError(
            f"invalid connect URL scheme {url.scheme!r} - must be tcp or udp"
        )

    # user info is not part of the address
    address = url.netloc.rpartition("@")[2]
    try:
        split_host_port(address)
    except ValueError as e:
        raise WatchdogConfigError(
            f"address {address!r} must specify a host and a port"
        ) from e

    timeout = _parse_timeout("connect", params)
    return ConnectCheck(address=address, protocol=url.scheme, timeout=timeout)


def _parse_get(params: list[str]) -> GetCheck:
    if len(params) not in (1, 2):
        raise WatchdogConfigError(
            f"get watchdog requires one or two arguments, {len(params)} given"
        )

    try:
        url = urlsplit(params[0])
    except ValueError as e:
        raise WatchdogConfigError(f"invalid GET URL {params[0]!r}: {e}") from e

    if url.scheme not in ("http", "https"):
        raise WatchdogConfigError(
            f"invalid GET URL scheme {url.scheme!r} - must be http or https"
        )

    timeout = _parse_timeout("get", params)
    return GetCheck(url=params[0], timeout=timeout)


def _parse_timeout(name: str, params: list[str]) -> int:
    """Optional second argument, whole seconds; <= 0 means the default."""
    if len(params) < 2:
        return DEFAULT_TIMEOUT

    value = params[1]
    if not _INTEGER.match(value):
        raise WatchdogConfigError(
            f"{name} watchdog second argument must be integer, not {value}"
        )

    timeout = int(value)
    if timeout <= 0:
        return DEFAULT_TIMEOUT
    return timeout
