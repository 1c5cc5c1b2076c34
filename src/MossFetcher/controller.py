# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.controller",
#   "purpose": "Public fetch entry point owning the queue, worker pool, and shared transfer state",
#   "sections": [
#     {"id": "default-worker-count", "name": "default_worker_count", "anchor": "#function-default-worker-count", "kind": "function"},
#     {"id": "fetchcontroller", "name": "FetchController", "anchor": "#class-fetchcontroller", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Fetch controller and worker pool management.

This module provides the FetchController class that:
- Owns the FetchQueue and serializes every queue mutation through
  ``allocate_work``
- Owns one TransferShare and the per-category locks it is arbitrated with
- Builds a fixed pool of FetchWorkers (worker 0 prefers large items, the rest
  small items)
- Runs one thread per worker in ``fetch()`` and blocks until all finish
- Releases worker clients and the share on ``close()``

**Architecture:**

    FetchController
      ├─ FetchQueue            (guarded by _queue_lock)
      ├─ CategoryLocks         (DNS / SSL_SESSION / CONNECT)
      ├─ TransferShare         (locks supplied by the controller)
      └─ FetchWorker[0..n-1]   (one thread each during fetch())

**Usage:**

    from MossFetcher import FetchController, Fetchable

    with FetchController(n_workers=4) as fc:
        fc.enqueue(Fetchable("https://example.org/a.bin", "out/a.bin", 1024))
        fc.fetch()
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Optional, Sequence

import httpx

from .cancellation import CancellationToken
from .config import FetcherConfig
from .errors import ConstructionError, EmptyQueue, FetcherClosedError, ShutdownError
from .models import Allocation, Fetchable, FetchContext, WorkerPreference
from .observer import FetchObserver, NullObserver
from .queue import FetchQueue
from .share import CategoryLocks, ShareLock, TransferShare
from .worker import FetchWorker

__all__ = ["FetchController", "default_worker_count"]

logger = logging.getLogger(__name__)


def default_worker_count() -> int:
    """Available parallelism minus one, never below one."""
    return max(1, (os.cpu_count() or 1) - 1)


class FetchController(FetchContext):
    """Distributes enqueued Fetchables across a fixed worker pool.

    Attributes:
        config: FetcherConfig shared by the share and every worker
        n_workers: Resolved pool size (always >= 1)
        observer: Receives progress and per-item outcomes from all workers
    """

    def __init__(
        self,
        n_workers: Optional[int] = None,
        *,
        config: Optional[FetcherConfig] = None,
        observer: Optional[FetchObserver] = None,
        transport: Optional[httpx.BaseTransport] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """Build the shared state and worker pool.

        Args:
            n_workers: Worker count; falls back to ``config.workers`` and then
                :func:`default_worker_count`. Values below 1 are clamped.
            config: Fetcher configuration (defaults to ``FetcherConfig()``)
            observer: Progress/outcome observer
            transport: Optional transport replacing the shared connection pool
            cancel_token: Optional externally owned cancellation token

        Raises:
            ConstructionError: If the shared state or any worker client fails
                to initialise; anything already built is released first
        """
        self.config = config or FetcherConfig()
        if n_workers is None:
            n_workers = self.config.workers
        if n_workers is None:
            n_workers = default_worker_count()
        self.n_workers = max(1, int(n_workers))
        self.observer: FetchObserver = observer or NullObserver()

        self._queue = FetchQueue()
        self._queue_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = False
        self._cancel = cancel_token or CancellationToken()
        self._locks = CategoryLocks()
        self._workers: list[FetchWorker] = []

        self._share = TransferShare(self, self.config, transport=transport)
        try:
            for index in range(self.n_workers):
                preference = (
                    WorkerPreference.LARGE_ITEMS if index == 0 else WorkerPreference.SMALL_ITEMS
                )
                self._workers.append(
                    FetchWorker(index, self._share, self.config, self.observer, preference)
                )
        except Exception as exc:
            self._release()
            raise ConstructionError(f"failed to create worker {len(self._workers)}: {exc}") from exc

        logger.info(
            "FetchController ready: %d worker(s), shared locks=%s",
            self.n_workers,
            ",".join(c.value for c in self._locks.categories()),
        )

    # ------------------------------------------------------------------
    # Lock provider for the shared transfer state
    # ------------------------------------------------------------------

    def lock(self, category: ShareLock) -> None:
        self._locks.lock(category)

    def unlock(self, category: ShareLock) -> None:
        self._locks.unlock(category)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def share(self) -> TransferShare:
        return self._share

    @property
    def workers(self) -> Sequence[FetchWorker]:
        return tuple(self._workers)

    @property
    def pending(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, fetchable: Fetchable) -> None:
        """Queue ``fetchable`` for the current or next :meth:`fetch`.

        Raises:
            TypeError: If ``fetchable`` is not a Fetchable
            FetcherClosedError: If the controller has been closed
        """
        if not isinstance(fetchable, Fetchable):
            raise TypeError(f"expected Fetchable, got {type(fetchable).__name__}")
        if self._closed:
            raise FetcherClosedError("cannot enqueue on a closed controller", url=fetchable.source_uri)
        with self._queue_lock:
            self._queue.enqueue(fetchable)

    def allocate_work(self, preference: WorkerPreference) -> Allocation:
        """Atomically hand out the next Fetchable for ``preference``."""
        if self._cancel.is_cancelled():
            return Allocation.cancelled()
        with self._queue_lock:
            if self._queue.is_empty():
                return Allocation.empty()
            try:
                if preference is WorkerPreference.LARGE_ITEMS:
                    fetchable = self._queue.pop_largest()
                else:
                    fetchable = self._queue.pop_smallest()
            except EmptyQueue:
                return Allocation.empty()
        return Allocation.of(fetchable)

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop handing out work; queued items are left in place."""
        self._cancel.cancel(reason)
        logger.info("Fetch cancelled: %s (%d item(s) abandoned)", reason, self.pending)

    def is_cancelled(self) -> bool:
        return self._cancel.is_cancelled()

    def fetch(self) -> None:
        """Run every worker to completion and return once all have finished.

        Raises:
            FetcherClosedError: If the controller has been closed
            Exception: The first unexpected error raised by a worker thread,
                re-raised after every other worker has finished
        """
        if self._closed:
            raise FetcherClosedError("cannot fetch on a closed controller")

        queued = self.pending
        logger.info("Fetch starting: %d item(s) across %d worker(s)", queued, self.n_workers)
        start = time.monotonic()
        with ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="fetch-worker"
        ) as executor:
            futures = [executor.submit(worker.run, self) for worker in self._workers]
            wait(futures)

        first_error: Optional[BaseException] = None
        for worker, future in zip(self._workers, futures):
            exc = future.exception()
            if exc is None:
                continue
            logger.error("Worker %d crashed: %s", worker.index, exc, exc_info=exc)
            if first_error is None:
                first_error = exc

        logger.info(
            "Fetch finished in %.2fs (%d item(s) left in queue)",
            time.monotonic() - start,
            self.pending,
        )
        if first_error is not None:
            raise first_error

    def close(self) -> None:
        """Release worker clients and the shared state. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._release()
        logger.info("FetchController closed")

    def _release(self) -> None:
        for worker in self._workers:
            try:
                worker.close()
            except ShutdownError as exc:
                logger.warning("Worker %d shutdown failed: %s", worker.index, exc)
        try:
            self._share.close()
        except ShutdownError as exc:
            logger.warning("Shared transfer state shutdown failed: %s", exc)

    def __enter__(self) -> "FetchController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
