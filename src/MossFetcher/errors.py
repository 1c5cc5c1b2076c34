# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.errors",
#   "purpose": "Error taxonomy for the fetch controller, workers, and shared transfer state.",
#   "sections": [
#     {"id": "fetchererror", "name": "FetcherError", "anchor": "class-fetchererror", "kind": "class"},
#     {"id": "constructionerror", "name": "ConstructionError", "anchor": "class-constructionerror", "kind": "class"},
#     {"id": "emptyqueue", "name": "EmptyQueue", "anchor": "class-emptyqueue", "kind": "class"},
#     {"id": "destinationerror", "name": "DestinationError", "anchor": "class-destinationerror", "kind": "class"},
#     {"id": "transfererror", "name": "TransferError", "anchor": "class-transfererror", "kind": "class"},
#     {"id": "shutdownerror", "name": "ShutdownError", "anchor": "class-shutdownerror", "kind": "class"},
#     {"id": "describe-failure", "name": "describe_failure", "anchor": "function-describe-failure", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Error taxonomy for concurrent fetches.

Responsibilities
----------------
- Define the exception types raised while constructing, running, and closing a
  :class:`~MossFetcher.controller.FetchController`.
- Keep enough metadata (``url``, ``details``) on each exception for observers
  and log records to describe a failure without re-parsing messages.
- Render a short, single-line reason for :class:`~MossFetcher.models.FetchResult`
  via :func:`describe_failure`.

Design Notes
------------
- Per-item failures (:class:`DestinationError`, :class:`TransferError`) never
  escape :meth:`FetchWorker.run`; they are recorded against the Fetchable.
- :class:`EmptyQueue` is an internal control-flow signal between the queue and
  the allocator and is never surfaced to callers of ``fetch()``.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

__all__ = (
    "FetcherError",
    "ConstructionError",
    "EmptyQueue",
    "DestinationError",
    "TransferError",
    "ShutdownError",
    "FetcherClosedError",
    "InvalidFetchableError",
    "describe_failure",
)


class FetcherError(Exception):
    """Base class for every error raised by the fetcher."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.details = details or {}


class ConstructionError(FetcherError):
    """Shared transfer state or a worker handle could not be initialised."""


class EmptyQueue(FetcherError, LookupError):
    """Raised by the fetch queue when a pop is attempted with nothing queued."""


class DestinationError(FetcherError):
    """The destination path could not be prepared or written."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        url: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, url=url, details=details)
        self.path = path


class TransferError(FetcherError):
    """A network, protocol, or status failure for a single Fetchable."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, url=url, details=details)
        self.status_code = status_code


class ShutdownError(FetcherError):
    """Releasing a worker handle or the shared transfer state failed."""


class FetcherClosedError(FetcherError, RuntimeError):
    """The controller was used after :meth:`close`."""


class InvalidFetchableError(FetcherError, ValueError):
    """A Fetchable was built with an empty URI, a schemeless URI, or a bad size."""


def describe_failure(exc: BaseException) -> str:
    """Return a short reason string suitable for ``FetchResult.reason``."""

    if isinstance(exc, TransferError) and exc.status_code is not None:
        return f"http_{exc.status_code}: {exc}"
    if isinstance(exc, TransferError):
        return f"transfer: {exc}"
    if isinstance(exc, DestinationError):
        return f"destination: {exc}"
    if isinstance(exc, httpx.TimeoutException):
        return f"timeout: {exc}"
    if isinstance(exc, httpx.HTTPError):
        return f"network: {exc}"
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"
