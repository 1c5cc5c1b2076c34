# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.worker",
#   "purpose": "Per-thread fetch loop owning one reusable, share-bound HTTP client",
#   "sections": [
#     {"id": "workallocator", "name": "WorkAllocator", "anchor": "#class-workallocator", "kind": "protocol"},
#     {"id": "fetchworker", "name": "FetchWorker", "anchor": "#class-fetchworker", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Fetch worker: pull one Fetchable at a time and stream it to disk.

This module provides the FetchWorker class that:
- Owns one ``httpx.Client`` for its whole lifetime, bound to the shared
  transfer state so DNS results, TLS sessions and pooled connections are reused
- Asks its allocator for work according to a fixed size preference
- Streams each response into a temporary file beside the destination and
  renames it into place once complete
- Forwards ``(received, expected)`` progress and a terminal FetchResult to the
  observer
- Records per-item failures and keeps going; only an empty (or cancelled)
  allocation ends the loop

**Usage:**

    worker = FetchWorker(0, share, config, observer, WorkerPreference.LARGE_ITEMS)
    worker.run(controller)   # returns when the queue is drained
    worker.close()
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import IO, Iterator, Optional, Protocol

import httpx

from .config import FetcherConfig
from .errors import DestinationError, FetcherError, ShutdownError, TransferError, describe_failure
from .file_transport import FileTransport, is_file_uri
from .models import (
    Allocation,
    Fetchable,
    FetchOutcome,
    FetchResult,
    WorkerPreference,
    WorkerState,
)
from .observer import FetchObserver, NullObserver
from .share import TransferShare

__all__ = ["FetchWorker", "WorkAllocator"]

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, OSError)


class WorkAllocator(Protocol):
    """What a worker needs from its controller."""

    def allocate_work(self, preference: WorkerPreference) -> Allocation: ...

    def is_cancelled(self) -> bool: ...


class FetchWorker:
    """Executes Fetchables sequentially on one reusable client.

    Attributes:
        index: Position in the controller's pool (0 prefers large items)
        preference: Fixed queue-extremum preference
        state: Current WorkerState
        allocated: Every Fetchable handed to this worker, in order
    """

    def __init__(
        self,
        index: int,
        share: TransferShare,
        config: Optional[FetcherConfig] = None,
        observer: Optional[FetchObserver] = None,
        preference: WorkerPreference = WorkerPreference.SMALL_ITEMS,
    ) -> None:
        self.index = index
        self.preference = preference
        self.config = config or share.config
        self.observer: FetchObserver = observer or NullObserver()
        self.state = WorkerState.IDLE
        self.allocated: list[Fetchable] = []
        self._written = 0

        self._lock = threading.Lock()
        cfg = self.config
        self._client: Optional[httpx.Client] = httpx.Client(
            transport=share.bind(),
            timeout=cfg.timeout(),
            follow_redirects=cfg.follow_redirects,
            max_redirects=cfg.max_redirects,
            headers={"User-Agent": cfg.user_agent, "Accept-Encoding": "identity"},
            trust_env=False,
        )
        self._files = FileTransport(cfg.chunk_size_bytes)
        logger.debug("Worker %d initialised (preference=%s)", index, preference.value)

    @property
    def closed(self) -> bool:
        return self._client is None

    def close(self) -> None:
        """Release this worker's client. Idempotent.

        Raises:
            ShutdownError: If the client fails to close
        """
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        try:
            client.close()
        except (OSError, RuntimeError, httpx.HTTPError) as exc:
            raise ShutdownError(f"worker {self.index} failed to close its client: {exc}") from exc

    def _set_state(self, state: WorkerState) -> None:
        with self._lock:
            self.state = state

    def run(self, allocator: WorkAllocator) -> None:
        """Process allocations until the allocator reports no more work."""
        logger.debug("Worker %d loop started", self.index)
        processed = 0
        while True:
            self._set_state(WorkerState.REQUESTING)
            allocation = allocator.allocate_work(self.preference)
            if not allocation.has_work or allocation.fetchable is None:
                break

            fetchable = allocation.fetchable
            self.allocated.append(fetchable)

            if allocator.is_cancelled():
                logger.info("Worker %d abandoning %s (cancelled)", self.index, fetchable.source_uri)
                self._report(FetchResult(fetchable, FetchOutcome.CANCELLED, worker_index=self.index))
                break

            self._set_state(WorkerState.TRANSFERRING)
            self.execute(fetchable)
            processed += 1
            self._set_state(WorkerState.IDLE)

        self._set_state(WorkerState.TERMINATED)
        logger.debug("Worker %d loop stopped after %d item(s)", self.index, processed)

    def execute(self, fetchable: Fetchable) -> FetchResult:
        """Transfer one Fetchable and report the result; never raises per-item errors."""
        start = time.monotonic()
        logger.debug(
            "Worker %d fetching %s -> %s (%d bytes expected)",
            self.index,
            fetchable.source_uri,
            fetchable.destination_path,
            fetchable.expected_size,
        )
        status_code: Optional[int] = None
        self._written = 0
        try:
            status_code, written = self._transfer(fetchable)
        except (DestinationError, TransferError) as exc:
            result = self._failure(fetchable, exc, start, status_code)
        except _NETWORK_ERRORS as exc:
            result = self._wrapped_failure(fetchable, exc, start, status_code)
        except Exception as exc:
            logger.warning(
                "Worker %d hit unexpected error on %s",
                self.index,
                fetchable.source_uri,
                exc_info=True,
            )
            result = self._wrapped_failure(fetchable, exc, start, status_code)
        else:
            result = FetchResult(
                fetchable,
                FetchOutcome.SUCCESS,
                bytes_written=written,
                elapsed_s=time.monotonic() - start,
                status_code=status_code,
                worker_index=self.index,
            )
            logger.info(
                "Worker %d fetched %s (%d bytes in %.3fs)",
                self.index,
                fetchable.source_uri,
                written,
                result.elapsed_s,
            )
        if not result.ok:
            logger.warning("Worker %d failed %s: %s", self.index, fetchable.source_uri, result.reason)
        self._report(result)
        return result

    def _failure(
        self,
        fetchable: Fetchable,
        exc: FetcherError,
        start: float,
        status_code: Optional[int],
        reason: Optional[str] = None,
    ) -> FetchResult:
        if status_code is None and isinstance(exc, TransferError):
            status_code = exc.status_code
        return FetchResult(
            fetchable,
            FetchOutcome.FAILURE,
            reason=reason or describe_failure(exc),
            error=exc,
            bytes_written=self._written,
            elapsed_s=time.monotonic() - start,
            status_code=status_code,
            worker_index=self.index,
        )

    def _wrapped_failure(
        self,
        fetchable: Fetchable,
        exc: Exception,
        start: float,
        status_code: Optional[int],
    ) -> FetchResult:
        wrapped = TransferError(str(exc) or type(exc).__name__, url=fetchable.source_uri)
        wrapped.__cause__ = exc
        return self._failure(fetchable, wrapped, start, status_code, reason=describe_failure(exc))

    def _report(self, result: FetchResult) -> None:
        try:
            self.observer.on_complete(result)
        except Exception as exc:
            logger.warning(
                "Worker %d observer failed on %s: %s",
                self.index,
                result.fetchable.source_uri,
                exc,
                exc_info=True,
            )

    def _transfer(self, fetchable: Fetchable) -> tuple[int, int]:
        client = self._client
        if client is None:
            raise TransferError(f"worker {self.index} is closed", url=fetchable.source_uri)

        dest = Path(fetchable.destination_path)
        tmp_file, tmp_path = _open_temp_beside(dest, fetchable.source_uri)
        written = 0
        try:
            with tmp_file:
                with self._open(client, fetchable.source_uri) as response:
                    if not response.is_success:
                        raise TransferError(
                            f"HTTP {response.status_code} for {fetchable.source_uri}",
                            url=fetchable.source_uri,
                            status_code=response.status_code,
                        )
                    expected = _expected_bytes(response, fetchable)
                    for chunk in response.iter_bytes(chunk_size=self.config.chunk_size_bytes):
                        if not chunk:
                            continue
                        try:
                            tmp_file.write(chunk)
                        except OSError as exc:
                            raise DestinationError(
                                f"write to {dest} failed: {exc}",
                                path=str(dest),
                                url=fetchable.source_uri,
                            ) from exc
                        written += len(chunk)
                        self._written = written
                        self._progress(fetchable, written, expected)
                    status_code = response.status_code

                if self.config.verify_size and fetchable.expected_size and (
                    written != fetchable.expected_size
                ):
                    raise TransferError(
                        f"size mismatch: expected {fetchable.expected_size}, got {written}",
                        url=fetchable.source_uri,
                        details={"expected": fetchable.expected_size, "written": written},
                    )
                try:
                    tmp_file.flush()
                    if self.config.fsync:
                        os.fsync(tmp_file.fileno())
                except OSError as exc:
                    raise DestinationError(
                        f"flush of {dest} failed: {exc}", path=str(dest), url=fetchable.source_uri
                    ) from exc
            try:
                os.replace(tmp_path, dest)
            except OSError as exc:
                raise DestinationError(
                    f"cannot move download into {dest}: {exc}",
                    path=str(dest),
                    url=fetchable.source_uri,
                ) from exc
        except BaseException:
            _discard(tmp_path)
            raise
        return status_code, written

    @contextlib.contextmanager
    def _open(self, client: httpx.Client, uri: str) -> Iterator[httpx.Response]:
        if not is_file_uri(uri):
            with client.stream("GET", uri) as response:
                yield response
            return
        response = self._files.request(uri)
        try:
            yield response
        finally:
            response.close()

    def _progress(self, fetchable: Fetchable, received: int, expected: int) -> None:
        try:
            self.observer.on_progress(fetchable, received, expected)
        except Exception as exc:
            raise TransferError(
                f"transfer aborted by progress observer: {exc}", url=fetchable.source_uri
            ) from exc


def _expected_bytes(response: httpx.Response, fetchable: Fetchable) -> int:
    header = response.headers.get("Content-Length")
    if header is not None:
        try:
            return int(header)
        except ValueError:
            pass
    return fetchable.expected_size


def _open_temp_beside(dest: Path, url: str) -> tuple[IO[bytes], Path]:
    """Create the parent directory and a temp file next to ``dest``."""
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, ValueError) as exc:
        raise DestinationError(
            f"cannot create directory {dest.parent}: {exc}", path=str(dest), url=url
        ) from exc
    try:
        handle = tempfile.NamedTemporaryFile(
            dir=dest.parent, prefix=f".{dest.name}.", suffix=".part", delete=False
        )
    except (OSError, ValueError) as exc:
        raise DestinationError(f"cannot write to {dest.parent}: {exc}", path=str(dest), url=url) from exc
    return handle, Path(handle.name)


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove partial download %s: %s", path, exc)
