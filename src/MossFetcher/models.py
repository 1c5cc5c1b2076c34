# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.models",
#   "purpose": "Fetchable value type, worker enums, allocation and result types",
#   "sections": [
#     {"id": "fetchable", "name": "Fetchable", "anchor": "#class-fetchable", "kind": "dataclass"},
#     {"id": "workerpreference", "name": "WorkerPreference", "anchor": "#class-workerpreference", "kind": "enum"},
#     {"id": "workerstate", "name": "WorkerState", "anchor": "#class-workerstate", "kind": "enum"},
#     {"id": "fetchresult", "name": "FetchResult", "anchor": "#class-fetchresult", "kind": "dataclass"},
#     {"id": "allocation", "name": "Allocation", "anchor": "#class-allocation", "kind": "dataclass"},
#     {"id": "fetchcontext", "name": "FetchContext", "anchor": "#class-fetchcontext", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Value types shared by the queue, workers, and controller.

**State Machine (Workers):**

    IDLE
      ↓ (allocate_work)
    REQUESTING
      ├→ TRANSFERRING → IDLE   (item allocated)
      └→ TERMINATED            (queue empty or cancelled)

TERMINATED is the only terminal state.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from .errors import InvalidFetchableError

__all__ = [
    "Fetchable",
    "WorkerPreference",
    "WorkerState",
    "FetchOutcome",
    "FetchResult",
    "AllocationKind",
    "Allocation",
    "FetchContext",
]

_MAX_SIZE = (1 << 64) - 1


@dataclass(frozen=True)
class Fetchable:
    """One requested transfer.

    Attributes:
        source_uri: Schemed URI to download from (``https://``, ``file://``, ...)
        destination_path: Filesystem path the payload is written to
        expected_size: Expected payload size in bytes, used for scheduling
    """

    source_uri: str
    destination_path: str
    expected_size: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.source_uri, str) or not self.source_uri.strip():
            raise InvalidFetchableError("source_uri must be a non-empty string")
        if not urlsplit(self.source_uri).scheme:
            raise InvalidFetchableError(
                f"source_uri must include a scheme: {self.source_uri!r}", url=self.source_uri
            )
        if self.destination_path is None or not str(self.destination_path).strip():
            raise InvalidFetchableError(
                "destination_path must be a non-empty path", url=self.source_uri
            )
        if isinstance(self.expected_size, bool) or not isinstance(self.expected_size, int):
            raise InvalidFetchableError(
                f"expected_size must be an integer, got {type(self.expected_size).__name__}",
                url=self.source_uri,
            )
        if not 0 <= self.expected_size <= _MAX_SIZE:
            raise InvalidFetchableError(
                f"expected_size out of range: {self.expected_size}", url=self.source_uri
            )
        # Accept os.PathLike destinations but store the plain string form.
        object.__setattr__(self, "destination_path", str(self.destination_path))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Fetchable":
        """Build a Fetchable from a manifest row (``uri``/``dest``/``size`` keys)."""

        try:
            uri = payload.get("uri", payload.get("source_uri"))
            dest = payload.get("dest", payload.get("destination_path"))
            size = payload.get("size", payload.get("expected_size", 0))
        except AttributeError as exc:
            raise InvalidFetchableError("manifest row must be a mapping") from exc
        if uri is None or dest is None:
            raise InvalidFetchableError("manifest row requires 'uri' and 'dest'")
        try:
            size = int(size or 0)
        except (TypeError, ValueError) as exc:
            raise InvalidFetchableError(f"invalid size: {size!r}", url=str(uri)) from exc
        return cls(source_uri=str(uri), destination_path=str(dest), expected_size=size)


class WorkerPreference(str, Enum):
    """Which extremum of the queue a worker pulls from."""

    SMALL_ITEMS = "small_items"
    LARGE_ITEMS = "large_items"


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    IDLE = "idle"
    REQUESTING = "requesting"
    TRANSFERRING = "transferring"
    TERMINATED = "terminated"


class FetchOutcome(str, Enum):
    """Terminal per-item outcome reported to observers."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FetchResult:
    """Result of one attempted Fetchable.

    Attributes:
        fetchable: The item that was attempted
        outcome: SUCCESS, FAILURE, or CANCELLED
        reason: Short failure description (``None`` on success)
        error: The exception recorded against the item, if any
        bytes_written: Bytes streamed to the destination
        elapsed_s: Wall-clock seconds spent on the attempt
        status_code: Final response status, when a response was received
        worker_index: Index of the worker that handled the item
    """

    fetchable: Fetchable
    outcome: FetchOutcome
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    bytes_written: int = 0
    elapsed_s: float = 0.0
    status_code: Optional[int] = None
    worker_index: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.outcome is FetchOutcome.SUCCESS


class AllocationKind(str, Enum):
    ALLOCATED = "allocated"
    EMPTY = "empty"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Allocation:
    """Outcome of ``allocate_work``: either one Fetchable or an explicit stop."""

    kind: AllocationKind
    fetchable: Optional[Fetchable] = None

    @classmethod
    def of(cls, fetchable: Fetchable) -> "Allocation":
        return cls(AllocationKind.ALLOCATED, fetchable)

    @classmethod
    def empty(cls) -> "Allocation":
        return cls(AllocationKind.EMPTY)

    @classmethod
    def cancelled(cls) -> "Allocation":
        return cls(AllocationKind.CANCELLED)

    @property
    def has_work(self) -> bool:
        return self.kind is AllocationKind.ALLOCATED


class FetchContext(abc.ABC):
    """Interface consumed by higher layers that want items downloaded."""

    @abc.abstractmethod
    def enqueue(self, fetchable: Fetchable) -> None:
        """Register ``fetchable`` for the next :meth:`fetch`."""

    @abc.abstractmethod
    def fetch(self) -> None:
        """Download everything enqueued and return when done."""
