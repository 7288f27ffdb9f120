"""Route-bounded connection pool.

``ConnectionPool`` is an ``httpx`` transport that keeps ``httpcore``
connections keyed by route (scheme, host, port). It bounds live connections
per route and in total, and exposes ``close_idle_connections`` for the idle
reaper.

Usage:
    pool = ConnectionPool("registry", max_per_route=50, max_total=200)
    client = httpx.Client(transport=pool)
    client.get("http://registry-1:8080/eureka/apps")

    # Background maintenance
    pool.close_idle_connections(30)
"""

from __future__ import annotations

import ssl
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, NamedTuple

import httpcore
import httpx
import structlog

from discovery_http.errors import PoolClosedError, PoolExhaustedError

logger = structlog.get_logger()

DEFAULT_PORTS = {"http": 80, "https": 443}

# Ordered most specific first; the first isinstance match wins.
_HTTPCORE_ERRORS: tuple[tuple[type[Exception], type[httpx.TransportError]], ...] = (
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.TimeoutException, httpx.TimeoutException),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.NetworkError, httpx.NetworkError),
    (httpcore.ProxyError, httpx.ProxyError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.ProtocolError, httpx.ProtocolError),
)


@contextmanager
def map_httpcore_exceptions() -> Iterator[None]:
    """Re-raise httpcore exceptions as their httpx counterparts."""
    try:
        yield
    except Exception as exc:
        for source, target in _HTTPCORE_ERRORS:
            if isinstance(exc, source):
                raise target(str(exc)) from exc
        raise


class Route(NamedTuple):
    """A distinct connection target."""

    scheme: str
    host: str
    port: int

    @classmethod
    def from_url(cls, url: httpx.URL) -> Route:
        scheme = url.scheme
        if scheme not in DEFAULT_PORTS:
            raise httpx.UnsupportedProtocol(f"Unsupported URL scheme: {scheme!r}")
        port = url.port or DEFAULT_PORTS[scheme]
        return cls(scheme, url.raw_host.decode("ascii"), port)

    @property
    def origin(self) -> httpcore.Origin:
        return httpcore.Origin(
            scheme=self.scheme.encode("ascii"),
            host=self.host.encode("ascii"),
            port=self.port,
        )

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


ConnectionFactory = Callable[[Route], httpcore.ConnectionInterface]


@dataclass(eq=False)
class PooledConnection:
    """A connection owned by the pool.

    Either ``in_use`` (checked out by a request) or idle with ``idle_since``
    set to the clock reading when it was released.
    """

    route: Route
    connection: httpcore.ConnectionInterface
    in_use: bool = True
    idle_since: float | None = None

    def idle_for(self, now: float) -> float:
        """Seconds this connection has been idle (0 while in use)."""
        if self.in_use or self.idle_since is None:
            return 0.0
        return now - self.idle_since


@dataclass
class PoolStats:
    """Point-in-time pool occupancy."""

    leased: int = 0
    idle: int = 0
    per_route: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.leased + self.idle


class ConnectionPool(httpx.BaseTransport):
    """Connection pool bounded per route and in total.

    Thread-safe: request threads acquire and release connections while the
    reaper sweeps idle ones. All bookkeeping happens under one condition
    lock; sockets are closed outside it.
    """

    def __init__(
        self,
        name: str = "default",
        *,
        ssl_context: ssl.SSLContext | None = None,
        max_per_route: int,
        max_total: int,
        connection_factory: ConnectionFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pool.

        Args:
            name: Pool name, used in logs (usually the client name)
            ssl_context: Context for https routes; transport default if None
            max_per_route: Maximum live connections per route
            max_total: Maximum live connections across all routes
            connection_factory: Override for creating connections (tests)
            clock: Monotonic clock for idle timestamps
        """
        if max_per_route < 1:
            raise ValueError(f"max_per_route must be >= 1, got {max_per_route}")
        if max_total < 1:
            raise ValueError(f"max_total must be >= 1, got {max_total}")

        self._name = name
        self._ssl_context = ssl_context
        self._max_per_route = max_per_route
        self._max_total = max_total
        self._clock = clock
        self._log = logger.bind(component="connection_pool", pool=name)

        self._connection_factory = connection_factory
        self._connector: httpcore.ConnectionPool = httpcore.ConnectionPool(
            ssl_context=ssl_context
        )
        self._proxy_url: str | None = None

        self._cond = threading.Condition()
        self._routes: dict[Route, list[PooledConnection]] = {}
        self._total = 0
        self._opened = 0
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def ssl_context(self) -> ssl.SSLContext | None:
        """Context used for https routes (None means transport default)."""
        return self._ssl_context

    @property
    def max_per_route(self) -> int:
        return self._max_per_route

    @property
    def max_total(self) -> int:
        return self._max_total

    @property
    def proxy_url(self) -> str | None:
        return self._proxy_url

    @property
    def is_closed(self) -> bool:
        return self._closed

    def configure_proxy(
        self,
        proxy_url: str,
        auth: tuple[str, str] | None = None,
    ) -> None:
        """Route every new connection through an HTTP proxy.

        Must be called before the pool opens its first connection.
        """
        with self._cond:
            if self._opened:
                raise RuntimeError("Proxy must be configured before connections are opened")
            self._connector = httpcore.HTTPProxy(
                proxy_url=proxy_url,
                proxy_auth=auth,
                ssl_context=self._ssl_context,
            )
            self._proxy_url = proxy_url
        self._log.info("pool.proxy.configured", proxy=proxy_url, authenticated=auth is not None)

    # Acquire / release

    def acquire(self, route: Route, timeout: float | None = None) -> PooledConnection:
        """Check out a connection for ``route``.

        Reuses an idle connection when one is available, otherwise opens a
        new one within the limits, otherwise waits for a release.

        Args:
            route: Connection target
            timeout: Seconds to wait for a free slot (None waits forever)

        Raises:
            PoolExhaustedError: No slot became free within ``timeout``
            PoolClosedError: The pool is closed
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        discarded: list[PooledConnection] = []
        try:
            with self._cond:
                return self._acquire_locked(route, deadline, discarded)
        finally:
            self._close_quietly(discarded, reason="stale")

    def _acquire_locked(
        self,
        route: Route,
        deadline: float | None,
        discarded: list[PooledConnection],
    ) -> PooledConnection:
        while True:
            if self._closed:
                raise PoolClosedError(details={"pool": self._name})

            entry = self._take_idle(route, discarded)
            if entry is not None:
                return entry

            route_count = len(self._routes.get(route, ()))
            if route_count < self._max_per_route:
                if self._total < self._max_total or self._evict_idle(discarded):
                    return self._open(route)

            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise PoolExhaustedError(
                    details={
                        "pool": self._name,
                        "route": str(route),
                        "route_connections": route_count,
                        "total_connections": self._total,
                    }
                )
            self._cond.wait(remaining)

    def _take_idle(
        self, route: Route, discarded: list[PooledConnection]
    ) -> PooledConnection | None:
        for entry in list(self._routes.get(route, ())):
            if entry.in_use:
                continue
            conn = entry.connection
            if conn.is_closed() or conn.has_expired():
                self._detach(entry)
                discarded.append(entry)
                continue
            if conn.is_available():
                entry.in_use = True
                entry.idle_since = None
                return entry
        return None

    def _evict_idle(self, discarded: list[PooledConnection]) -> bool:
        """Free one slot under the total limit by dropping the oldest idle connection."""
        idle = [
            entry
            for entries in self._routes.values()
            for entry in entries
            if not entry.in_use
        ]
        if not idle:
            return False
        oldest = min(idle, key=lambda e: e.idle_since or 0.0)
        self._detach(oldest)
        discarded.append(oldest)
        return True

    def _open(self, route: Route) -> PooledConnection:
        if self._connection_factory is not None:
            connection = self._connection_factory(route)
        else:
            connection = self._connector.create_connection(route.origin)
        entry = PooledConnection(route=route, connection=connection)
        self._routes.setdefault(route, []).append(entry)
        self._total += 1
        self._opened += 1
        self._log.debug("pool.connection.opened", route=str(route), total=self._total)
        return entry

    def _detach(self, entry: PooledConnection) -> None:
        entries = self._routes.get(entry.route)
        if not entries or entry not in entries:
            return
        entries.remove(entry)
        if not entries:
            del self._routes[entry.route]
        self._total -= 1

    def release(self, entry: PooledConnection) -> None:
        """Return a checked-out connection to the pool.

        Connections that are closed, expired, or no longer able to take a
        request are dropped instead of kept idle.
        """
        drop = False
        with self._cond:
            entry.in_use = False
            conn = entry.connection
            if self._closed or conn.is_closed() or conn.has_expired() or not conn.is_available():
                self._detach(entry)
                drop = True
            else:
                entry.idle_since = self._clock()
            self._cond.notify_all()
        if drop:
            self._close_quietly([entry], reason="not_reusable")

    # Maintenance

    def close_idle_connections(self, idle_seconds: float) -> None:
        """Close connections idle for longer than ``idle_seconds``.

        Checked-out connections are never touched. Failures closing a single
        connection are logged and do not stop the sweep.
        """
        now = self._clock()
        with self._cond:
            expired = [
                entry
                for entries in self._routes.values()
                for entry in entries
                if not entry.in_use and entry.idle_for(now) > idle_seconds
            ]
            for entry in expired:
                self._detach(entry)
            if expired:
                self._cond.notify_all()

        if expired:
            self._log.debug(
                "pool.idle.closing",
                count=len(expired),
                idle_seconds=idle_seconds,
            )
        self._close_quietly(expired, reason="idle")

    def stats(self) -> PoolStats:
        """Snapshot of the pool's occupancy."""
        stats = PoolStats()
        with self._cond:
            for route, entries in self._routes.items():
                stats.per_route[str(route)] = len(entries)
                for entry in entries:
                    if entry.in_use:
                        stats.leased += 1
                    else:
                        stats.idle += 1
        return stats

    def close(self) -> None:
        """Close every pooled connection. Idempotent."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            entries = [e for es in self._routes.values() for e in es]
            self._routes.clear()
            self._total = 0
            self._cond.notify_all()

        self._close_quietly(entries, reason="shutdown")
        self._connector.close()
        self._log.info("pool.closed", connections=len(entries))

    def _close_quietly(self, entries: list[PooledConnection], *, reason: str) -> None:
        for entry in entries:
            try:
                entry.connection.close()
            except Exception as e:
                self._log.warning(
                    "pool.connection.close_failed",
                    route=str(entry.route),
                    reason=reason,
                    error=str(e),
                )

    # httpx transport

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        route = Route.from_url(request.url)
        timeouts = request.extensions.get("timeout", {})
        try:
            entry = self.acquire(route, timeouts.get("pool"))
        except PoolExhaustedError as e:
            raise httpx.PoolTimeout(e.message, request=request) from e

        core_request = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=request.stream,
            extensions=request.extensions,
        )
        try:
            with map_httpcore_exceptions():
                core_response = entry.connection.handle_request(core_request)
        except BaseException:
            self.release(entry)
            raise

        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=PooledResponseStream(self, entry, core_response),
            extensions=core_response.extensions,
        )


class PooledResponseStream(httpx.SyncByteStream):
    """Response body that hands its connection back to the pool on close."""

    def __init__(
        self,
        pool: ConnectionPool,
        entry: PooledConnection,
        response: httpcore.Response,
    ) -> None:
        self._pool = pool
        self._entry = entry
        self._response = response
        self._released = False

    def __iter__(self) -> Iterator[bytes]:
        with map_httpcore_exceptions():
            for part in self._response.iter_stream():
                yield part

    def close(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            with map_httpcore_exceptions():
                self._response.close()
        finally:
            self._pool.release(self._entry)
