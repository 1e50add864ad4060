"""Bounded min-heap that keeps the K most recent update events of a stream."""

from __future__ import annotations

import heapq
import itertools

from models import InvalidCapacity, UpdateEvent


class TopKSelector:
    """Keep the `capacity` events with the greatest recency key.

    Heap entries are `(recency_key, -arrival, event)`: the root is the oldest
    event and, among equal keys, the most recently offered one. An incoming
    event replaces the root only when its key is strictly greater, so at the
    capacity boundary ties are resolved in favour of whichever event was
    offered first.
    """

    def __init__(self, capacity: int):
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise InvalidCapacity(f"Capacity must be a positive integer, got {capacity!r}.")
        self.capacity = capacity
        self._heap: list[tuple[int, int, UpdateEvent]] = []
        self._arrivals = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def offer(self, event: UpdateEvent) -> bool:
        """Offer one event. Returns True if it was admitted."""
        entry = (event.recency_key, -next(self._arrivals), event)
        if len(self._heap) < self.capacity:
            heapq.heappush(self._heap, entry)
            return True
        if event.recency_key > self._heap[0][0]:
            heapq.heapreplace(self._heap, entry)
            return True
        return False

    def min_key(self) -> int | None:
        return self._heap[0][0] if self._heap else None

    def drain(self) -> list[UpdateEvent]:
        """Current contents, newest first; ties in offer order.

        Does not consume the heap: later offers still apply and a second
        drain reflects them.
        """
        return [entry[2] for entry in sorted(self._heap, reverse=True)]
