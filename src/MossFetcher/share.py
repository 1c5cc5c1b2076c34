# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.share",
#   "purpose": "Shared DNS/TLS-session/connection-pool state with caller-supplied per-category locking",
#   "sections": [
#     {"id": "sharelock", "name": "ShareLock", "anchor": "#class-sharelock", "kind": "enum"},
#     {"id": "lockprovider", "name": "LockProvider", "anchor": "#class-lockprovider", "kind": "protocol"},
#     {"id": "categorylocks", "name": "CategoryLocks", "anchor": "#class-categorylocks", "kind": "class"},
#     {"id": "transfershare", "name": "TransferShare", "anchor": "#class-transfershare", "kind": "class"},
#     {"id": "sharedbackend", "name": "SharedNetworkBackend", "anchor": "#class-sharednetworkbackend", "kind": "class"},
#     {"id": "boundtransport", "name": "ShareBoundTransport", "anchor": "#class-shareboundtransport", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Shared transfer state reused by every worker's HTTP client.

Responsibilities
----------------
- Own the cross-handle caches that make many small transfers cheap:
  a DNS cache, a TLS session cache, and an ``httpcore`` connection pool.
- Arbitrate every access to those caches through ``lock(category)`` /
  ``unlock(category)`` on an injected :class:`LockProvider`. The shared data
  has no locking of its own; the provider (normally the owning
  :class:`~MossFetcher.controller.FetchController`) supplies one mutex per
  :class:`ShareLock` category.
- Hand each worker a transport bound to the share (:meth:`TransferShare.bind`)
  so that closing a worker's client never tears down the shared pool.
- Allow callers to inject a custom transport (e.g. :class:`httpx.MockTransport`)
  in place of the pool for tests.

Architecture:

    httpx.Client (one per worker)
      └─ ShareBoundTransport ──► TransferShare.handle_request  [CONNECT lock]
            └─ _PoolTransport (httpx ⇄ httpcore mapping)
                 └─ httpcore.ConnectionPool
                      └─ SharedNetworkBackend.connect_tcp     [DNS lock]
                           └─ SharedStream.start_tls          [SSL_SESSION lock]

Design Notes
------------
- Locks are held only while a cache is read or written, never across
  network I/O; name resolution and TLS handshakes run unlocked.
- DNS entries expire after ``dns_cache_ttl_s``; a host whose every address
  refuses connection is evicted so the next attempt re-resolves.
- TLS sessions are keyed by ``(server_hostname, port)`` and are dropped when
  a resumed handshake fails.
"""

from __future__ import annotations

import contextlib
import logging
import select
import socket
import ssl
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Protocol, Sequence

import certifi
import httpcore
import httpx

from .config import FetcherConfig
from .errors import ConstructionError, FetcherClosedError, ShutdownError

__all__ = [
    "ShareLock",
    "LockProvider",
    "CategoryLocks",
    "ShareStats",
    "TransferShare",
    "SharedNetworkBackend",
    "SharedStream",
    "ShareBoundTransport",
    "build_ssl_context",
]

LOGGER = logging.getLogger(__name__)

_AddrInfo = tuple[Any, ...]


class ShareLock(str, Enum):
    """Categories of shared data, each guarded by its own mutex."""

    DNS = "dns"
    SSL_SESSION = "ssl_session"
    CONNECT = "connect"


class LockProvider(Protocol):
    """Supplies mutual exclusion for one :class:`ShareLock` category at a time."""

    def lock(self, category: ShareLock) -> None: ...

    def unlock(self, category: ShareLock) -> None: ...


class CategoryLocks:
    """Explicit ``ShareLock -> threading.Lock`` mapping owned by one controller."""

    def __init__(self, categories: Iterable[ShareLock] = tuple(ShareLock)) -> None:
        self._locks: dict[ShareLock, threading.Lock] = {
            ShareLock(category): threading.Lock() for category in categories
        }

    def _get(self, category: ShareLock) -> threading.Lock:
        try:
            return self._locks[category]
        except KeyError:
            raise ValueError(f"no lock registered for category {category!r}") from None

    def lock(self, category: ShareLock) -> None:
        self._get(category).acquire()

    def unlock(self, category: ShareLock) -> None:
        self._get(category).release()

    def locked(self, category: ShareLock) -> bool:
        return self._get(category).locked()

    def categories(self) -> tuple[ShareLock, ...]:
        return tuple(self._locks)


@dataclass(frozen=True)
class ShareStats:
    """Snapshot of shared-cache activity."""

    dns_lookups: int = 0
    dns_hits: int = 0
    tls_sessions_stored: int = 0
    tls_sessions_resumed: int = 0
    connections_opened: int = 0
    requests: int = 0


@dataclass(frozen=True)
class _DnsEntry:
    addresses: tuple[_AddrInfo, ...]
    expires_at: float


def build_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """Return the TLS context shared by every pooled connection."""

    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class TransferShare:
    """Cross-handle DNS, TLS-session, and connection-pool cache.

    Attributes:
        config: FetcherConfig the pool was sized from
    """

    def __init__(
        self,
        locks: LockProvider,
        config: Optional[FetcherConfig] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        """Initialise shared state.

        Args:
            locks: Provider arbitrating access per :class:`ShareLock` category
            config: Pool sizing, DNS TTL and TLS verification settings
            transport: Optional transport used instead of the internal pool
            ssl_context: Optional TLS context (defaults to a certifi context)

        Raises:
            ConstructionError: If the TLS context or pool cannot be created
        """
        self.config = config or FetcherConfig()
        self._locks = locks
        self._dns: dict[tuple[str, int], _DnsEntry] = {}
        self._tls_sessions: dict[tuple[str, int], ssl.SSLSession] = {}
        self._stats = ShareStats()
        self._stats_lock = threading.Lock()
        self._closed = False
        self._pool: Optional[httpcore.ConnectionPool] = None
        self.ssl_context: Optional[ssl.SSLContext] = None

        if transport is not None:
            self._transport: httpx.BaseTransport = transport
            LOGGER.debug("TransferShare using injected transport %s", type(transport).__name__)
            return

        cfg = self.config
        try:
            self.ssl_context = ssl_context or build_ssl_context(cfg.verify_tls)
            self._pool = httpcore.ConnectionPool(
                ssl_context=self.ssl_context,
                max_connections=cfg.max_connections,
                max_keepalive_connections=cfg.max_keepalive_connections,
                keepalive_expiry=cfg.keepalive_expiry_s,
                retries=cfg.connect_retries,
                network_backend=SharedNetworkBackend(self),
            )
        except (OSError, ValueError, ssl.SSLError) as exc:
            raise ConstructionError(f"failed to initialise shared transfer state: {exc}") from exc
        self._transport = _PoolTransport(self._pool)
        LOGGER.debug(
            "TransferShare pool created: max_connections=%s keepalive=%s dns_ttl=%ss",
            cfg.max_connections,
            cfg.max_keepalive_connections,
            cfg.dns_cache_ttl_s,
        )

    # ------------------------------------------------------------------
    # Lock adapter
    # ------------------------------------------------------------------

    def lock(self, category: ShareLock) -> None:
        self._locks.lock(category)

    def unlock(self, category: ShareLock) -> None:
        self._locks.unlock(category)

    @contextlib.contextmanager
    def _guard(self, category: ShareLock) -> Iterator[None]:
        self.lock(category)
        try:
            yield
        finally:
            self.unlock(category)

    def _bump(self, **deltas: int) -> None:
        with self._stats_lock:
            current = self._stats
            self._stats = replace(
                current, **{k: getattr(current, k) + v for k, v in deltas.items()}
            )

    def stats(self) -> ShareStats:
        with self._stats_lock:
            return self._stats

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # DNS cache
    # ------------------------------------------------------------------

    def resolve(self, host: str, port: int) -> tuple[_AddrInfo, ...]:
        """Return ``getaddrinfo`` results for ``host:port``, cached for the DNS TTL.

        Raises:
            OSError: If resolution fails
            UnicodeError: If ``host`` is not a valid IDNA name
        """
        key = (host.lower(), port)
        now = time.monotonic()
        with self._guard(ShareLock.DNS):
            entry = self._dns.get(key)
            if entry is not None and entry.expires_at > now:
                self._bump(dns_hits=1)
                return entry.addresses
            if entry is not None:
                del self._dns[key]

        addresses = tuple(socket.getaddrinfo(host, port, type=socket.SOCK_STREAM))
        self._bump(dns_lookups=1)
        if not addresses:
            raise OSError(f"no addresses found for {host}")

        ttl = self.config.dns_cache_ttl_s
        if ttl > 0:
            with self._guard(ShareLock.DNS):
                self._dns[key] = _DnsEntry(addresses, time.monotonic() + ttl)
        LOGGER.debug("Resolved %s:%s to %d address(es)", host, port, len(addresses))
        return addresses

    def forget_host(self, host: str, port: int) -> None:
        with self._guard(ShareLock.DNS):
            self._dns.pop((host.lower(), port), None)

    def cached_hosts(self) -> list[tuple[str, int]]:
        with self._guard(ShareLock.DNS):
            return sorted(self._dns)

    # ------------------------------------------------------------------
    # TLS session cache
    # ------------------------------------------------------------------

    def tls_session(self, host: str, port: int) -> Optional[ssl.SSLSession]:
        with self._guard(ShareLock.SSL_SESSION):
            return self._tls_sessions.get((host.lower(), port))

    def store_tls_session(
        self, host: str, port: int, session: Optional[ssl.SSLSession], *, resumed: bool = False
    ) -> None:
        if resumed:
            self._bump(tls_sessions_resumed=1)
        if session is None:
            return
        with self._guard(ShareLock.SSL_SESSION):
            self._tls_sessions[(host.lower(), port)] = session
        self._bump(tls_sessions_stored=1)

    def drop_tls_session(self, host: str, port: int) -> None:
        with self._guard(ShareLock.SSL_SESSION):
            self._tls_sessions.pop((host.lower(), port), None)

    # ------------------------------------------------------------------
    # Connection pool
    # ------------------------------------------------------------------

    def note_connection(self, host: str, port: int) -> None:
        self._bump(connections_opened=1)
        LOGGER.debug("Opened connection to %s:%s", host, port)

    def bind(self) -> "ShareBoundTransport":
        """Return a transport for one worker's client, bound to this share."""
        return ShareBoundTransport(self)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        with self._guard(ShareLock.CONNECT):
            if self._closed:
                raise FetcherClosedError("shared transfer state is closed", url=str(request.url))
            transport = self._transport
        self._bump(requests=1)
        return transport.handle_request(request)

    def close(self) -> None:
        """Release the pool and clear the caches. Safe to call repeatedly.

        Raises:
            ShutdownError: If the pool or injected transport fails to close
        """
        with self._guard(ShareLock.CONNECT):
            if self._closed:
                return
            self._closed = True
            transport = self._transport

        with self._guard(ShareLock.DNS):
            self._dns.clear()
        with self._guard(ShareLock.SSL_SESSION):
            self._tls_sessions.clear()

        try:
            transport.close()
        except (OSError, RuntimeError, httpx.HTTPError) as exc:
            raise ShutdownError(f"failed to close connection pool: {exc}") from exc
        LOGGER.debug("TransferShare closed")


class ShareBoundTransport(httpx.BaseTransport):
    """Per-worker transport that routes through a :class:`TransferShare`.

    ``close()`` only detaches the worker; the share owns the pool.
    """

    def __init__(self, share: TransferShare) -> None:
        self._share = share

    @property
    def share(self) -> TransferShare:
        return self._share

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        return self._share.handle_request(request)

    def close(self) -> None:
        pass


# ============================================================================
# httpcore network backend
# ============================================================================


class SharedNetworkBackend(httpcore.SyncBackend):
    """Network backend that resolves hosts through the share's DNS cache."""

    def __init__(self, share: TransferShare) -> None:
        self._share = share

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.NetworkStream:
        try:
            addresses = self._share.resolve(host, port)
        except (OSError, UnicodeError) as exc:
            raise httpcore.ConnectError(f"DNS resolution failed for {host}: {exc}") from exc

        last_error: Optional[OSError] = None
        for family, socktype, proto, _canonname, sockaddr in addresses:
            try:
                sock = socket.socket(family, socktype, proto)
            except OSError as exc:
                last_error = exc
                continue
            try:
                sock.settimeout(timeout)
                if local_address is not None:
                    sock.bind((local_address, 0))
                for option in socket_options or ():
                    sock.setsockopt(*option)
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                sock.connect(sockaddr)
            except socket.timeout as exc:
                sock.close()
                raise httpcore.ConnectTimeout(f"connect to {host}:{port} timed out") from exc
            except OSError as exc:
                sock.close()
                last_error = exc
                continue
            self._share.note_connection(host, port)
            return SharedStream(sock, self._share, (host, port))

        self._share.forget_host(host, port)
        raise httpcore.ConnectError(f"could not connect to {host}:{port}: {last_error}")


class SharedStream(httpcore.NetworkStream):
    """Blocking socket stream that resumes TLS sessions from the share."""

    def __init__(
        self,
        sock: socket.socket,
        share: TransferShare,
        origin: tuple[str, int],
        tls_key: Optional[tuple[str, int]] = None,
    ) -> None:
        self._sock = sock
        self._share = share
        self._origin = origin
        self._tls_key = tls_key

    def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        try:
            self._sock.settimeout(timeout)
            return self._sock.recv(max_bytes)
        except socket.timeout as exc:
            raise httpcore.ReadTimeout(str(exc)) from exc
        except OSError as exc:
            raise httpcore.ReadError(str(exc)) from exc

    def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        if not buffer:
            return
        try:
            while buffer:
                self._sock.settimeout(timeout)
                sent = self._sock.send(buffer)
                buffer = buffer[sent:]
        except socket.timeout as exc:
            raise httpcore.WriteTimeout(str(exc)) from exc
        except OSError as exc:
            raise httpcore.WriteError(str(exc)) from exc

    def close(self) -> None:
        if self._tls_key is not None and isinstance(self._sock, ssl.SSLSocket):
            # TLS 1.3 tickets arrive after the handshake; refresh before closing.
            try:
                session = self._sock.session
            except (OSError, ValueError) as exc:
                LOGGER.debug("Could not read TLS session for %s: %s", self._tls_key, exc)
            else:
                self._share.store_tls_session(*self._tls_key, session)
        self._sock.close()

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.NetworkStream:
        if isinstance(self._sock, ssl.SSLSocket):
            raise httpcore.UnsupportedProtocol("TLS-in-TLS streams are not supported")

        key = (server_hostname or self._origin[0], self._origin[1])
        session = self._share.tls_session(*key)
        try:
            self._sock.settimeout(timeout)
            tls_sock = ssl_context.wrap_socket(
                self._sock, server_hostname=server_hostname, session=session
            )
        except socket.timeout as exc:
            self._sock.close()
            raise httpcore.ConnectTimeout(f"TLS handshake with {key[0]} timed out") from exc
        except (OSError, ValueError) as exc:
            # ssl.SSLError is an OSError; a stale session surfaces as ValueError.
            self._share.drop_tls_session(*key)
            self._sock.close()
            raise httpcore.ConnectError(f"TLS handshake with {key[0]} failed: {exc}") from exc

        self._share.store_tls_session(*key, tls_sock.session, resumed=tls_sock.session_reused)
        return SharedStream(tls_sock, self._share, self._origin, tls_key=key)

    def get_extra_info(self, info: str) -> Any:
        if info == "ssl_object" and isinstance(self._sock, ssl.SSLSocket):
            return self._sock
        if info == "client_addr":
            return self._sock.getsockname()
        if info == "server_addr":
            return self._sock.getpeername()
        if info == "socket":
            return self._sock
        if info == "is_readable":
            return _is_socket_readable(self._sock)
        return None


def _is_socket_readable(sock: socket.socket) -> bool:
    """Return True if an idle socket has data or EOF pending (i.e. is stale)."""
    if sock.fileno() == -1:
        return True
    readable, _, _ = select.select([sock], [], [], 0)
    return bool(readable)


# ============================================================================
# httpx ⇄ httpcore mapping
# ============================================================================

_ERROR_MAP: Sequence[tuple[type[Exception], type[httpx.TransportError]]] = (
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.TimeoutException, httpx.TimeoutException),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.NetworkError, httpx.NetworkError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.ProtocolError, httpx.ProtocolError),
)


@contextlib.contextmanager
def _map_pool_errors() -> Iterator[None]:
    try:
        yield
    except tuple(source for source, _ in _ERROR_MAP) as exc:
        for source, target in _ERROR_MAP:
            if isinstance(exc, source):
                raise target(str(exc)) from exc
        raise  # pragma: no cover


class _PoolResponseStream(httpx.SyncByteStream):
    def __init__(self, stream: Iterable[bytes]) -> None:
        self._stream = stream

    def __iter__(self) -> Iterator[bytes]:
        with _map_pool_errors():
            for part in self._stream:
                yield part

    def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()


class _PoolTransport(httpx.BaseTransport):
    """Adapts an ``httpcore.ConnectionPool`` to the httpx transport interface."""

    def __init__(self, pool: httpcore.ConnectionPool) -> None:
        self._pool = pool

    def handle_request(self, request: httpx.Request) -> httpx.Response:
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
        with _map_pool_errors():
            core_response = self._pool.handle_request(core_request)
        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=_PoolResponseStream(core_response.stream),
            extensions=core_response.extensions,
        )

    def close(self) -> None:
        self._pool.close()
