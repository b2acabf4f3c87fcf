"""Health check strategies."""

from __future__ import annotations

import signal
import socket
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter

APP_NAME = "health-watchdog"
USER_AGENT = f"{APP_NAME} watchdog"

DEFAULT_TIMEOUT = 60
PROTOCOLS = ("tcp", "udp")


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single check run."""

    PROCESS_START = "process_start"
    EXIT_STATUS = "exit_status"
    CONNECT = "connect"
    HTTP_STATUS = "http_status"
    HTTP_ERROR = "http_error"

    check: str
    ok: bool
    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        """Check passed without an error."""
        return self.ok and self.error is None

    @classmethod
    def success(cls, check: "BaseCheck") -> "CheckResult":
        return cls(check=str(check), ok=True)

    @classmethod
    def failure(cls, check: "BaseCheck", reason: str, error: str) -> "CheckResult":
        return cls(check=str(check), ok=False, reason=reason, error=error)


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises ValueError when the host or port is missing or the port is not a
    valid number.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port:
        raise ValueError(f"address {address!r} must specify a host and a port")
    if host.startswith("["):
        if not host.endswith("]"):
            raise ValueError(f"address {address!r} has an unterminated IPv6 host")
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"address {address!r} has too many colons")
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"address {address!r} has an invalid port {port!r}")
    return host, int(port)


def dial(protocol: str, address: str, timeout: float) -> socket.socket:
    """Open a connection bounded by ``timeout``.

    The returned socket keeps ``timeout`` as its I/O deadline so a stalled
    peer cannot block the caller past it.
    """
    host, port = split_host_port(address)
    if protocol == "tcp":
        return socket.create_connection((host, port), timeout=timeout)

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in socket.getaddrinfo(
        host, port, 0, socket.SOCK_DGRAM
    ):
        sock = socket.socket(family, socktype, proto)
        sock.settimeout(timeout)
        try:
            sock.connect(sockaddr)
            return sock
        except OSError as e:
            last_error = e
            sock.close()
    raise last_error or OSError(f"no addresses found for {address}")


class BaseCheck(ABC):
    """A single health check."""

    @abstractmethod
    def check(self) -> CheckResult:
        """Run the check once."""


@dataclass(frozen=True)
class RunCheck(BaseCheck):
    """Run a command; healthy when it exits with status 0."""

    argv: tuple[str, ...]

    def __post_init__(self):
        if not self.argv:
            raise ValueError("run watchdog requires at least one argument")
        object.__setattr__(self, "argv", tuple(self.argv))

    def check(self) -> CheckResult:
        try:
            result = subprocess.run(
                list(self.argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            return CheckResult.failure(self, CheckResult.PROCESS_START, f"cannot start {self.argv[0]}: {e}")

        if result.returncode < 0:
            try:
                name = signal.Signals(-result.returncode).name
            except ValueError:
                name = str(-result.returncode)
            return CheckResult.failure(self, CheckResult.EXIT_STATUS, f"{self.argv[0]} killed by signal {name}")
        if result.returncode != 0:
            return CheckResult.failure(
                self, CheckResult.EXIT_STATUS, f"{self.argv[0]} exited with status {result.returncode}"
            )
        return CheckResult.success(self)

    def __str__(self):
        return f"run: [{' '.join(self.argv)}]"


@dataclass(frozen=True)
class ConnectCheck(BaseCheck):
    """Open a tcp or udp connection within a timeout."""

    address: str
    protocol: str = "tcp"
    timeout: int = DEFAULT_TIMEOUT

    def __post_init__(self):
        if not self.protocol:
            object.__setattr__(self, "protocol", "tcp")
        if self.protocol not in PROTOCOLS:
            raise ValueError(f"invalid connect protocol {self.protocol!r} - must be tcp or udp")
        split_host_port(self.address)
        if self.timeout <= 0:
            object.__setattr__(self, "timeout", DEFAULT_TIMEOUT)

    def check(self) -> CheckResult:
        try:
            conn = dial(self.protocol, self.address, self.timeout)
        except socket.timeout:
            return CheckResult.failure(
                self, CheckResult.CONNECT, f"connect to {self.address} timed out after {self.timeout}s"
            )
        except OSError as e:
            return CheckResult.failure(self, CheckResult.CONNECT, f"connect to {self.address} failed: {e}")
        conn.close()
        return CheckResult.success(self)

    def __str__(self):
        return f"connect to: {self.address} ({self.protocol})"


class DeadlineAdapter(HTTPAdapter):
    """HTTP adapter that can abort every connection it opened.

    ``abort()`` shuts down the tracked sockets, so a request blocked on a
    slow peer fails immediately instead of waiting for its read timeout.
    """

    def __init__(self, **kwargs):
        self._lock = threading.Lock()
        self._sockets: list[socket.socket] = []
        self.aborted = False
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            scheme: self._tracking_pool(pool_cls)
            for scheme, pool_cls in self.poolmanager.pool_classes_by_scheme.items()
        }

    def _tracking_pool(self, pool_cls):
        adapter = self

        class TrackingConnection(pool_cls.ConnectionCls):
            def connect(self):
                super().connect()
                adapter.track(self.sock)

        return type(f"Tracking{pool_cls.__name__}", (pool_cls,), {"ConnectionCls": TrackingConnection})

    def track(self, sock: socket.socket):
        with self._lock:
            self._sockets.append(sock)
            if self.aborted:
                self._shutdown(sock)

    def abort(self):
        with self._lock:
            self.aborted = True
            for sock in self._sockets:
                self._shutdown(sock)

    @staticmethod
    def _shutdown(sock: socket.socket):
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already closed
            pass


@dataclass(frozen=True)
class GetCheck(BaseCheck):
    """HTTP GET a URL; healthy only on status 200.

    ``timeout`` bounds both each socket operation and the request as a whole,
    measured from the start of the check.
    """

    url: str
    timeout: int = DEFAULT_TIMEOUT

    def __post_init__(self):
        scheme = urlsplit(self.url).scheme
        if scheme not in ("http", "https"):
            raise ValueError(f"invalid GET URL scheme {scheme!r} - must be http or https")
        if self.timeout <= 0:
            object.__setattr__(self, "timeout", DEFAULT_TIMEOUT)

    def check(self) -> CheckResult:
        adapter = DeadlineAdapter()
        session = requests.Session()
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        deadline = threading.Timer(self.timeout, adapter.abort)
        deadline.daemon = True
        deadline.start()
        try:
            return self._get(session, adapter)
        finally:
            deadline.cancel()
            session.close()

    def _get(self, session: requests.Session, adapter: DeadlineAdapter) -> CheckResult:
        try:
            # stream=True: the body is never read, only released on close()
            response = session.get(
                self.url,
                headers={"User-Agent": USER_AGENT},
                timeout=(self.timeout, self.timeout),
                stream=True,
            )
        except requests.RequestException as e:
            if adapter.aborted:
                return CheckResult.failure(
                    self, CheckResult.HTTP_ERROR, f"GET {self.url} exceeded its {self.timeout}s deadline"
                )
            if isinstance(e, requests.Timeout):
                return CheckResult.failure(
                    self, CheckResult.HTTP_ERROR, f"GET {self.url} timed out after {self.timeout}s"
                )
            return CheckResult.failure(self, CheckResult.HTTP_ERROR, f"GET {self.url} failed: {e}")

        try:
            # An abort during the headers can look like a clean end of headers
            if adapter.aborted:
                return CheckResult.failure(
                    self, CheckResult.HTTP_ERROR, f"GET {self.url} exceeded its {self.timeout}s deadline"
                )
            if response.status_code != 200:
                return CheckResult.failure(
                    self, CheckResult.HTTP_STATUS, f"non-200 status code {response.status_code}"
                )
            return CheckResult.success(self)
        finally:
            response.close()

    def __str__(self):
        return f"GET: {self.url}"
