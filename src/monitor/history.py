"""Bounded history of recent breadcrumbs."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Generic, TypeVar

_T = TypeVar("_T")


class HistoryRing(Generic[_T]):
    """A fixed-capacity ring buffer.

    - push(): O(1); at capacity the oldest entry is overwritten.
    - snapshot(): a new list, oldest-first, that never aliases the buffer.
    """

    def __init__(self, capacity: int = 50) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be > 0. Got: {capacity}")

        self.capacity: int = capacity
        self._buffer: list[_T | None] = [None] * capacity
        self._head = 0
        self._size = 0

    def push(self, item: _T) -> None:
        """Append an item, overwriting the oldest one when full."""
        tail = (self._head + self._size) % self.capacity
        self._buffer[tail] = item
        if self._size < self.capacity:
            self._size += 1
        else:
            self._head = (self._head + 1) % self.capacity

    def snapshot(self) -> list[_T]:
        """Return the retained items in insertion order."""
        return [self._buffer[(self._head + i) % self.capacity] for i in range(self._size)]  # type: ignore[misc]

    def clear(self) -> None:
        self._buffer = [None] * self.capacity
        self._head = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[_T]:
        return iter(self.snapshot())
