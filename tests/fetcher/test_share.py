"""Tests for the shared transfer state and its per-category locking.

Tests cover:
- CategoryLocks mapping and unknown categories
- Lock provider calls around every cache access
- DNS cache hits, TTL expiry, and disabled caching
- TLS session cache bookkeeping
- Injected transports and idempotent close
- The real connection pool against a loopback HTTP server
"""

from __future__ import annotations

import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterator

import httpx
import pytest

from MossFetcher.config import FetcherConfig
from MossFetcher.errors import ConstructionError, FetcherClosedError, ShutdownError
from MossFetcher.share import CategoryLocks, ShareLock, TransferShare


class RecordingLocks:
    """Lock provider that records every call and checks balanced use."""

    def __init__(self) -> None:
        self.inner = CategoryLocks()
        self.calls: list[tuple[str, ShareLock]] = []

    def lock(self, category: ShareLock) -> None:
        self.inner.lock(category)
        self.calls.append(("lock", category))

    def unlock(self, category: ShareLock) -> None:
        self.calls.append(("unlock", category))
        self.inner.unlock(category)

    def categories_used(self) -> set[ShareLock]:
        return {category for _, category in self.calls}

    def balanced(self) -> bool:
        depth: dict[ShareLock, int] = {}
        for op, category in self.calls:
            depth[category] = depth.get(category, 0) + (1 if op == "lock" else -1)
            if depth[category] < 0:
                return False
        return all(v == 0 for v in depth.values())


def _fake_getaddrinfo(counter: list[str]):
    def fake(host, port, *args, **kwargs):
        counter.append(host)
        return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", port))]

    return fake


def test_category_locks_cover_every_category() -> None:
    locks = CategoryLocks()
    assert set(locks.categories()) == {ShareLock.DNS, ShareLock.SSL_SESSION, ShareLock.CONNECT}
    locks.lock(ShareLock.DNS)
    assert locks.locked(ShareLock.DNS)
    assert not locks.locked(ShareLock.CONNECT)
    locks.unlock(ShareLock.DNS)
    assert not locks.locked(ShareLock.DNS)


def test_category_locks_reject_unknown_category() -> None:
    locks = CategoryLocks([ShareLock.DNS])
    with pytest.raises(ValueError):
        locks.lock(ShareLock.CONNECT)


def test_separate_instances_do_not_share_locks() -> None:
    first, second = CategoryLocks(), CategoryLocks()
    first.lock(ShareLock.DNS)
    try:
        assert not second.locked(ShareLock.DNS)
    finally:
        first.unlock(ShareLock.DNS)


def test_resolve_caches_until_ttl(monkeypatch: pytest.MonkeyPatch) -> None:
    lookups: list[str] = []
    monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo(lookups))
    clock = [100.0]
    monkeypatch.setattr("MossFetcher.share.time.monotonic", lambda: clock[0])

    locks = RecordingLocks()
    share = TransferShare(locks, FetcherConfig(dns_cache_ttl_s=30))
    try:
        share.resolve("Example.org", 443)
        share.resolve("example.org", 443)
        assert lookups == ["Example.org"]
        assert share.cached_hosts() == [("example.org", 443)]

        clock[0] += 31
        share.resolve("example.org", 443)
        assert len(lookups) == 2

        stats = share.stats()
        assert stats.dns_lookups == 2
        assert stats.dns_hits == 1
    finally:
        share.close()

    assert ShareLock.DNS in locks.categories_used()
    assert locks.balanced()


def test_zero_ttl_disables_dns_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    lookups: list[str] = []
    monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo(lookups))
    share = TransferShare(CategoryLocks(), FetcherConfig(dns_cache_ttl_s=0))
    try:
        share.resolve("example.org", 80)
        share.resolve("example.org", 80)
    finally:
        share.close()
    assert len(lookups) == 2
    assert share.cached_hosts() == []


def test_forget_host(monkeypatch: pytest.MonkeyPatch) -> None:
    lookups: list[str] = []
    monkeypatch.setattr(socket, "getaddrinfo", _fake_getaddrinfo(lookups))
    share = TransferShare(CategoryLocks())
    share.resolve("example.org", 80)
    share.forget_host("EXAMPLE.org", 80)
    share.resolve("example.org", 80)
    share.close()
    assert len(lookups) == 2


def test_tls_session_cache_uses_session_lock() -> None:
    locks = RecordingLocks()
    share = TransferShare(locks)
    sentinel = object()
    share.store_tls_session("Example.org", 443, sentinel)  # type: ignore[arg-type]
    assert share.tls_session("example.org", 443) is sentinel
    share.drop_tls_session("example.org", 443)
    assert share.tls_session("example.org", 443) is None
    share.store_tls_session("example.org", 443, None, resumed=True)
    share.close()

    stats = share.stats()
    assert stats.tls_sessions_stored == 1
    assert stats.tls_sessions_resumed == 1
    assert ShareLock.SSL_SESSION in locks.categories_used()
    assert locks.balanced()


def test_injected_transport_routes_under_connect_lock() -> None:
    locks = RecordingLocks()
    seen: list[bool] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(locks.inner.locked(ShareLock.CONNECT))
        return httpx.Response(200, content=b"ok")

    share = TransferShare(locks, transport=httpx.MockTransport(handler))
    assert share.ssl_context is None
    with httpx.Client(transport=share.bind()) as client:
        assert client.get("https://example.org/").content == b"ok"
    # Closing a worker client leaves the share usable.
    with httpx.Client(transport=share.bind()) as client:
        assert client.get("https://example.org/").status_code == 200
    share.close()

    assert seen == [False, False]
    assert share.stats().requests == 2
    assert ("lock", ShareLock.CONNECT) in locks.calls
    assert locks.balanced()


def test_requests_after_close_are_refused() -> None:
    share = TransferShare(
        CategoryLocks(), transport=httpx.MockTransport(lambda r: httpx.Response(200))
    )
    share.close()
    with httpx.Client(transport=share.bind()) as client:
        with pytest.raises(FetcherClosedError):
            client.get("https://example.org/")


def test_close_is_idempotent() -> None:
    closed: list[int] = []

    class CountingTransport(httpx.MockTransport):
        def close(self) -> None:
            closed.append(1)

    share = TransferShare(
        CategoryLocks(), transport=CountingTransport(lambda r: httpx.Response(200))
    )
    share.close()
    share.close()
    assert share.closed
    assert closed == [1]


def test_close_failure_raises_shutdown_error() -> None:
    class BrokenTransport(httpx.MockTransport):
        def close(self) -> None:
            raise OSError("socket already gone")

    share = TransferShare(CategoryLocks(), transport=BrokenTransport(lambda r: httpx.Response(200)))
    with pytest.raises(ShutdownError):
        share.close()
    share.close()


def test_bad_tls_context_is_construction_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(verify: bool = True):
        raise OSError("no CA bundle")

    monkeypatch.setattr("MossFetcher.share.build_ssl_context", broken)
    with pytest.raises(ConstructionError):
        TransferShare(CategoryLocks())


# ---------------------------------------------------------------------------
# Real pool against a loopback server
# ---------------------------------------------------------------------------


class _PayloadHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    close_after_response = False

    def do_GET(self) -> None:  # noqa: N802
        body = f"payload:{self.path}".encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(len(body)))
        if self.close_after_response:
            self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        pass


class _ClosingHandler(_PayloadHandler):
    close_after_response = True


def _serve(handler: type[BaseHTTPRequestHandler]) -> Iterator[str]:
    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


@pytest.fixture
def keepalive_server() -> Iterator[str]:
    yield from _serve(_PayloadHandler)


@pytest.fixture
def closing_server() -> Iterator[str]:
    yield from _serve(_ClosingHandler)


@pytest.mark.network
def test_pool_reuses_connection_across_clients(keepalive_server: str) -> None:
    locks = RecordingLocks()
    share = TransferShare(locks, FetcherConfig())
    try:
        for i in range(3):
            with httpx.Client(transport=share.bind()) as client:
                response = client.get(f"{keepalive_server}/item{i}")
                assert response.content == f"payload:/item{i}".encode()
        stats = share.stats()
        assert stats.requests == 3
        assert stats.connections_opened == 1
        assert stats.dns_lookups == 1
    finally:
        share.close()
    assert {ShareLock.DNS, ShareLock.CONNECT} <= locks.categories_used()
    assert locks.balanced()


@pytest.mark.network
def test_new_connections_hit_dns_cache(closing_server: str) -> None:
    share = TransferShare(CategoryLocks(), FetcherConfig(dns_cache_ttl_s=60))
    try:
        with httpx.Client(transport=share.bind()) as client:
            for i in range(4):
                assert client.get(f"{closing_server}/f{i}").status_code == 200
        stats = share.stats()
        assert stats.connections_opened == 4
        assert stats.dns_lookups == 1
        assert stats.dns_hits == 3
    finally:
        share.close()


@pytest.mark.network
def test_connection_refused_evicts_dns_entry() -> None:
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    share = TransferShare(CategoryLocks(), FetcherConfig(connect_timeout_s=2))
    try:
        with httpx.Client(transport=share.bind()) as client:
            with pytest.raises(httpx.ConnectError):
                client.get(f"http://127.0.0.1:{port}/")
        assert share.cached_hosts() == []
    finally:
        share.close()


def test_invalid_idna_host_is_connect_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(host, port, *args, **kwargs):
        raise UnicodeError("label empty or too long")

    monkeypatch.setattr(socket, "getaddrinfo", refuse)
    share = TransferShare(CategoryLocks(), FetcherConfig())
    try:
        with httpx.Client(transport=share.bind()) as client:
            with pytest.raises(httpx.ConnectError, match="DNS resolution failed"):
                client.get("http://a..b/")
        assert share.cached_hosts() == []
    finally:
        share.close()
