# === NAVMAP v1 ===
# {
#   "module": "MossFetcher.queue",
#   "purpose": "Pending-fetch multiset with largest/smallest extraction",
#   "sections": [
#     {"id": "fetchqueue", "name": "FetchQueue", "anchor": "#class-fetchqueue", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Pending-fetch queue ordered by expected size.

The queue is an ordered multiset of :class:`~MossFetcher.models.Fetchable`
items that can be drained from either end:

- ``pop_largest()`` removes the item with the greatest ``expected_size``
- ``pop_smallest()`` removes the item with the least ``expected_size``

Among equal sizes the earliest-inserted item is returned first, from either end.

**Design:**

Two heaps index the same entries, a min-heap keyed ``(size, seq)`` and a
max-heap keyed ``(-size, seq)``. A pop from one heap marks the entry's
sequence number as taken; the other heap discards taken entries lazily when
they reach its top. Enqueue and pop are both O(log n) amortised.

**Thread Safety:**

None. The controller serialises every call under its allocation lock.
"""

from __future__ import annotations

import heapq
import itertools
import logging

from .errors import EmptyQueue
from .models import Fetchable

__all__ = ["FetchQueue"]

logger = logging.getLogger(__name__)


class FetchQueue:
    """Multiset of pending Fetchables supporting pop-by-size-extremum."""

    def __init__(self) -> None:
        self._min_heap: list[tuple[int, int, Fetchable]] = []
        self._max_heap: list[tuple[int, int, Fetchable]] = []
        self._taken: set[int] = set()
        self._counter = itertools.count()
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def __bool__(self) -> bool:
        return self._size > 0

    def is_empty(self) -> bool:
        """Return True when no Fetchables remain."""
        return self._size == 0

    def enqueue(self, fetchable: Fetchable) -> None:
        """Add ``fetchable``; duplicates are kept and processed independently."""
        seq = next(self._counter)
        heapq.heappush(self._min_heap, (fetchable.expected_size, seq, fetchable))
        heapq.heappush(self._max_heap, (-fetchable.expected_size, seq, fetchable))
        self._size += 1

    def pop_largest(self) -> Fetchable:
        """Remove and return the largest item (earliest inserted among ties).

        Raises:
            EmptyQueue: If nothing is queued
        """
        return self._pop(self._max_heap)

    def pop_smallest(self) -> Fetchable:
        """Remove and return the smallest item (earliest inserted among ties).

        Raises:
            EmptyQueue: If nothing is queued
        """
        return self._pop(self._min_heap)

    def _pop(self, heap: list[tuple[int, int, Fetchable]]) -> Fetchable:
        if self._size == 0:
            raise EmptyQueue("fetch queue is empty")
        while heap:
            _, seq, fetchable = heapq.heappop(heap)
            if seq in self._taken:
                # Already returned through the other heap.
                self._taken.discard(seq)
                continue
            self._taken.add(seq)
            self._size -= 1
            if self._size == 0:
                # Both heaps now hold only taken entries.
                self._min_heap.clear()
                self._max_heap.clear()
                self._taken.clear()
            return fetchable
        raise EmptyQueue("fetch queue index is inconsistent")  # pragma: no cover
