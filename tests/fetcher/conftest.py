"""
Fetcher Test Fixtures

Shared fixtures for the fetcher suite: a config that skips fsync, helpers
building ``httpx.MockTransport`` handlers that serve fixed payloads, and a
reset of the ``MossFetcher`` logger so CLI runs do not leak handlers into
later tests.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator, Mapping

import httpx
import pytest

from MossFetcher.config import FetcherConfig
from MossFetcher.models import Fetchable, FetchResult


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("MossFetcher")
    for handler in list(logger.handlers):
        if getattr(handler, "_moss_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def fast_config() -> FetcherConfig:
    return FetcherConfig(fsync=False, chunk_size_bytes=16)


class PayloadServer:
    """MockTransport handler serving ``{path: bytes}`` and recording requests."""

    def __init__(self, payloads: Mapping[str, bytes], status: Mapping[str, int] | None = None):
        self.payloads = dict(payloads)
        self.status = dict(status or {})
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        path = request.url.path
        if path in self.status:
            return httpx.Response(self.status[path], content=b"error")
        body = self.payloads.get(path)
        if body is None:
            return httpx.Response(404, content=b"not found")
        return httpx.Response(200, content=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def paths(self) -> list[str]:
        with self._lock:
            return [r.url.path for r in self.requests]


@pytest.fixture
def payload_server() -> Callable[..., PayloadServer]:
    return PayloadServer


class RecordingObserver:
    """Thread-safe observer keeping every progress tuple and result."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.progress: list[tuple[str, int, int]] = []
        self.results: list[FetchResult] = []

    def on_progress(self, fetchable: Fetchable, received: int, expected: int) -> None:
        with self._lock:
            self.progress.append((fetchable.source_uri, received, expected))

    def on_complete(self, result: FetchResult) -> None:
        with self._lock:
            self.results.append(result)

    def result_for(self, uri: str) -> FetchResult:
        matches = [r for r in self.results if r.fetchable.source_uri == uri]
        assert len(matches) == 1, f"expected one result for {uri}, got {len(matches)}"
        return matches[0]


@pytest.fixture
def recorder() -> RecordingObserver:
    return RecordingObserver()
