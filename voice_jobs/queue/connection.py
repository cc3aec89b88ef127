"""Shared Redis connection for every queue and worker.

Parses the configured endpoint, opens a single client with capped
reconnect backoff, and reports connection lifecycle events.

Requires: redis
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote, urlsplit

import redis
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6379
LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")
TLS_SCHEMES = ("rediss", "https")
PLAIN_SCHEMES = ("redis",)

CONNECTION_EVENTS = ("connect", "error", "reconnecting", "close")


@dataclass
class ConnectionSettings:
    """Parsed connection endpoint.

    Attributes:
        host: Redis host name.
        port: Redis port.
        password: Credential (Upstash token or URL password).
        username: Optional ACL user name.
        db: Database index.
        tls: Whether the connection is wrapped in TLS.
    """

    host: str
    port: int = DEFAULT_PORT
    password: Optional[str] = None
    username: Optional[str] = None
    db: int = 0
    tls: bool = False


def parse_connection_url(url: str, token: Optional[str] = None, tls: Optional[bool] = None) -> ConnectionSettings:
    """Parse a host/port/credential triple from a Redis endpoint.

    Accepts bare ``host:port`` endpoints (as issued by Upstash) as well as
    ``redis://``, ``rediss://`` and ``http(s)://`` URLs.

    TLS is used for ``rediss``/``https`` URLs and for other endpoints that
    are not local. An explicit ``redis://`` URL opts out. ``tls`` overrides
    both.

    Args:
        url: The endpoint.
        token: Credential used when the URL carries no password.
        tls: Optional explicit TLS setting.

    Returns:
        ConnectionSettings.

    Raises:
        ValueError: If no host can be found in the URL.
    """
    if not url:
        raise ValueError("Redis URL is required")

    has_scheme = "://" in url
    parts = urlsplit(url if has_scheme else f"//{url}")
    scheme = parts.scheme.lower()

    if not parts.hostname:
        raise ValueError(f"Invalid Redis URL: {url}")

    db = 0
    path = parts.path.strip("/")
    if path.isdigit():
        db = int(path)

    if tls is None:
        if scheme in TLS_SCHEMES:
            tls = True
        elif scheme in PLAIN_SCHEMES:
            tls = False
        else:
            tls = parts.hostname not in LOCAL_HOSTS

    password = unquote(parts.password) if parts.password else token
    username = unquote(parts.username) if parts.username else None

    return ConnectionSettings(
        host=parts.hostname,
        port=parts.port or DEFAULT_PORT,
        password=password or None,
        username=username,
        db=db,
        tls=tls,
    )


class CappedLinearBackoff(AbstractBackoff):
    """Reconnect delay of ``min(attempt * step, cap)``."""

    def __init__(
        self,
        step_ms: int = 50,
        cap_ms: int = 2000,
        on_retry: Optional[Callable[[int, int], None]] = None,
    ):
        self.step_ms = step_ms
        self.cap_ms = cap_ms
        self._on_retry = on_retry

    def __deepcopy__(self, memo: Dict[int, Any]) -> "CappedLinearBackoff":
        # redis-py deep-copies Retry per connection; the retry hook must stay shared.
        return self

    def delay_ms(self, failures: int) -> int:
        return min(failures * self.step_ms, self.cap_ms)

    def reset(self) -> None:
        pass

    def compute(self, failures: int) -> float:
        delay = self.delay_ms(failures)
        logger.warning(f"Redis connection retry {failures}, delay {delay}ms")
        if self._on_retry is not None:
            self._on_retry(failures, delay)
        return delay / 1000.0


class ReportingRetry(Retry):
    """Retry policy that reports when a command gives up reconnecting."""

    def __init__(
        self,
        backoff: AbstractBackoff,
        retries: int,
        on_give_up: Optional[Callable[[Exception], None]] = None,
    ):
        super().__init__(backoff, retries)
        self._on_give_up = on_give_up

    def __deepcopy__(self, memo: Dict[int, Any]) -> "ReportingRetry":
        return self

    def call_with_retry(self, do: Callable[[], Any], fail: Callable[[Exception], Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return super().call_with_retry(do, fail, *args, **kwargs)
        except self._supported_errors as e:
            if self._on_give_up is not None:
                self._on_give_up(e)
            raise


class ConnectionManager:
    """Owns the single Redis client shared by all queues and workers.

    The client connects on the first command unless :meth:`connect` is
    called first. Commands that hit a connection error are retried with
    :class:`CappedLinearBackoff` up to ``max_connection_retries`` times and
    then fail with the store's error, which is also emitted as an
    'error' event.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        tls: Optional[bool] = None,
        max_connection_retries: int = 20,
        socket_timeout_seconds: Optional[float] = None,
    ):
        """Initialize the connection manager.

        Args:
            url: Redis endpoint (``host:port`` or URL).
            token: Credential used when the URL carries no password.
            tls: Optional explicit TLS setting.
            max_connection_retries: Reconnect attempts per command.
            socket_timeout_seconds: Optional socket timeout.
        """
        self.settings = parse_connection_url(url, token=token, tls=tls)
        self.max_connection_retries = max_connection_retries
        self.socket_timeout_seconds = socket_timeout_seconds
        self.backoff = CappedLinearBackoff(on_retry=self._on_retry)

        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._lock = threading.Lock()
        self._client: Optional[redis.Redis] = None
        self._closed = False

        logger.info(f"Connecting to Redis at {self.settings.host}:{self.settings.port} (tls={self.settings.tls})")

    # === Events ===

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        """Register a listener for a connection event.

        Args:
            event: One of 'connect', 'error', 'reconnecting', 'close'.
            listener: Callable invoked with the event arguments.

        Raises:
            ValueError: If the event name is unknown.
        """
        if event not in CONNECTION_EVENTS:
            raise ValueError(f"Unknown connection event: {event}")
        self._listeners[event].append(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Connection '{event}' listener failed: {e}")

    def _on_retry(self, failures: int, delay_ms: int) -> None:
        self._emit("reconnecting", failures, delay_ms)

    def _on_give_up(self, error: Exception) -> None:
        logger.error(f"Redis command failed after {self.max_connection_retries} retries: {error}")
        self._emit("error", error)

    # === Client ===

    @property
    def client(self) -> redis.Redis:
        """Get or create the shared Redis client."""
        with self._lock:
            if self._closed:
                raise RedisConnectionError("Connection is closed")
            if self._client is None:
                self._client = self._create_client()
            return self._client

    def _create_client(self) -> redis.Redis:
        kwargs: Dict[str, Any] = {
            "host": self.settings.host,
            "port": self.settings.port,
            "db": self.settings.db,
            "password": self.settings.password,
            "username": self.settings.username,
            "decode_responses": True,
            "retry": ReportingRetry(self.backoff, self.max_connection_retries, on_give_up=self._on_give_up),
            "retry_on_error": [RedisConnectionError, RedisTimeoutError],
            "socket_timeout": self.socket_timeout_seconds,
            "health_check_interval": 30,
        }
        if self.settings.tls:
            kwargs["ssl"] = True
            kwargs["ssl_cert_reqs"] = None
        return redis.Redis(**kwargs)

    def connect(self) -> bool:
        """Open the connection eagerly and report the outcome.

        Never raises: a failure is logged and emitted as an 'error' event.

        Returns:
            True if the server answered a PING.
        """
        try:
            self.client.ping()
        except redis.RedisError as e:
            logger.error(f"Redis connection error: {e}")
            self._emit("error", e)
            return False
        logger.info("Redis connection established")
        self._emit("connect")
        return True

    def health_check(self) -> bool:
        """Check if the store answers."""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            self._emit("error", e)
            return False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the shared client. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            client, self._client = self._client, None

        if client is not None:
            client.close()
            client.connection_pool.disconnect()
        logger.info("Redis connection closed")
        self._emit("close")
