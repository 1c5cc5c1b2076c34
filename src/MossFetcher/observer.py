# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.observer",
#   "purpose": "Progress and outcome observers consumed by higher layers",
#   "sections": [
#     {"id": "fetchobserver", "name": "FetchObserver", "anchor": "#class-fetchobserver", "kind": "protocol"},
#     {"id": "loggingobserver", "name": "LoggingObserver", "anchor": "#class-loggingobserver", "kind": "class"},
#     {"id": "fetchreport", "name": "FetchReport", "anchor": "#class-fetchreport", "kind": "class"},
#     {"id": "progressbarobserver", "name": "ProgressBarObserver", "anchor": "#class-progressbarobserver", "kind": "class"},
#     {"id": "observergroup", "name": "ObserverGroup", "anchor": "#class-observergroup", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Observers receiving per-Fetchable progress and terminal outcomes.

Observers are called from worker threads, concurrently, and must be
thread-safe. ``on_progress`` is called once per received chunk;
``on_complete`` exactly once per allocated Fetchable.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Protocol

from tqdm import tqdm

from .models import Fetchable, FetchOutcome, FetchResult

__all__ = [
    "FetchObserver",
    "NullObserver",
    "LoggingObserver",
    "FetchReport",
    "ProgressBarObserver",
    "ObserverGroup",
]

logger = logging.getLogger(__name__)


class FetchObserver(Protocol):
    def on_progress(self, fetchable: Fetchable, received: int, expected: int) -> None: ...

    def on_complete(self, result: FetchResult) -> None: ...


class NullObserver:
    def on_progress(self, fetchable: Fetchable, received: int, expected: int) -> None:
        pass

    def on_complete(self, result: FetchResult) -> None:
        pass


class LoggingObserver:
    """Logs progress every ``step_percent`` at DEBUG, plus a line per finished item."""

    def __init__(self, step_percent: float = 25.0, log: Optional[logging.Logger] = None) -> None:
        self.step_percent = step_percent
        self._log = log or logger
        self._marks: dict[int, float] = {}
        self._lock = threading.Lock()

    def on_progress(self, fetchable: Fetchable, received: int, expected: int) -> None:
        if expected <= 0:
            return
        percent = received / expected * 100.0
        key = threading.get_ident()
        with self._lock:
            last = self._marks.get(key, 0.0)
            if percent - last < self.step_percent and received < expected:
                return
            self._marks[key] = percent
        self._log.debug("%s: %.1f%% (%d/%d bytes)", fetchable.source_uri, percent, received, expected)

    def on_complete(self, result: FetchResult) -> None:
        with self._lock:
            self._marks.pop(threading.get_ident(), None)
        self._log.debug(
            "%s finished: %s in %.3fs",
            result.fetchable.source_uri,
            result.outcome.value,
            result.elapsed_s,
        )


class FetchReport:
    """Thread-safe collector of every :class:`FetchResult`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: list[FetchResult] = []
        self._progress_calls = 0

    def on_progress(self, fetchable: Fetchable, received: int, expected: int) -> None:
        with self._lock:
            self._progress_calls += 1

    def on_complete(self, result: FetchResult) -> None:
        with self._lock:
            self._results.append(result)

    @property
    def progress_calls(self) -> int:
        with self._lock:
            return self._progress_calls

    @property
    def results(self) -> list[FetchResult]:
        with self._lock:
            return list(self._results)

    def succeeded(self) -> list[FetchResult]:
        return [r for r in self.results if r.outcome is FetchOutcome.SUCCESS]

    def failed(self) -> list[FetchResult]:
        return [r for r in self.results if r.outcome is FetchOutcome.FAILURE]

    def cancelled(self) -> list[FetchResult]:
        return [r for r in self.results if r.outcome is FetchOutcome.CANCELLED]

    def summary(self) -> dict[str, Any]:
        results = self.results
        return {
            "total": len(results),
            "succeeded": sum(1 for r in results if r.outcome is FetchOutcome.SUCCESS),
            "failed": sum(1 for r in results if r.outcome is FetchOutcome.FAILURE),
            "cancelled": sum(1 for r in results if r.outcome is FetchOutcome.CANCELLED),
            "bytes": sum(r.bytes_written for r in results),
        }


class ProgressBarObserver:
    """Aggregate tqdm byte counter across all workers."""

    def __init__(self, total_bytes: int = 0, *, disable: bool = False, **tqdm_kwargs: Any) -> None:
        self._bar = tqdm(
            total=total_bytes or None,
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            disable=disable,
            **tqdm_kwargs,
        )
        self._seen: dict[int, int] = {}
        self._lock = threading.Lock()

    def on_progress(self, fetchable: Fetchable, received: int, expected: int) -> None:
        key = threading.get_ident()
        with self._lock:
            delta = received - self._seen.get(key, 0)
            self._seen[key] = received
            if delta > 0:
                self._bar.update(delta)

    def on_complete(self, result: FetchResult) -> None:
        with self._lock:
            self._seen.pop(threading.get_ident(), None)
            self._bar.set_postfix_str(result.fetchable.destination_path[-40:], refresh=False)

    def close(self) -> None:
        self._bar.close()


class ObserverGroup:
    """Fan out notifications to several observers in order."""

    def __init__(self, *observers: FetchObserver) -> None:
        self.observers = list(observers)

    def on_progress(self, fetchable: Fetchable, received: int, expected: int) -> None:
        for observer in self.observers:
            observer.on_progress(fetchable, received, expected)

    def on_complete(self, result: FetchResult) -> None:
        for observer in self.observers:
            observer.on_complete(result)
