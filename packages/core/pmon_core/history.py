"""Bounded, insertion-ordered history per metric stream."""

from __future__ import annotations

import threading
from collections import deque
from typing import Generic, Iterator, TypeVar


T = TypeVar("T")

DEFAULT_CAPACITY = 60


class HistoryBuffer(Generic[T]):
    """Fixed-capacity FIFO ring; the oldest entry is evicted on overflow.

    ``snapshot()`` copies under the lock, so readers never see a push half-applied.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("history capacity must be >= 1")
        self.capacity = int(capacity)
        self._items: deque[T] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()

    def push(self, entry: T) -> None:
        with self._lock:
            self._items.append(entry)

    def snapshot(self) -> tuple[T, ...]:
        with self._lock:
            return tuple(self._items)

    def latest(self) -> T | None:
        with self._lock:
            return self._items[-1] if self._items else None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.snapshot())
