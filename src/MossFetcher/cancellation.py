"""Cooperative cancellation for fetch runs.

A running :class:`~MossFetcher.controller.FetchController` has no way to
interrupt a transfer that is already streaming. Instead it shares one
:class:`CancellationToken` with every worker. The token is checked whenever a
worker asks for work and again just before a transfer starts. Once it is set,
workers stop taking items and anything still queued is left where it is.
"""

from __future__ import annotations

import threading

__all__ = ["CancellationToken"]


class CancellationToken:
    """Thread-safe, one-way cancellation flag.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("operator abort")
        >>> token.is_cancelled(), token.reason
        (True, 'operator abort')
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation; the first reason given is kept."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return the flag."""
        return self._event.wait(timeout)
