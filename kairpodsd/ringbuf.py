"""Fixed-capacity ring buffer that keeps the most recent values."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class Ring(Generic[T]):
    """A ring buffer of fixed capacity; pushing onto a full ring drops the oldest value."""

    def __init__(self, capacity: int, values: Iterable[T] = ()) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data: list[T | None] = [None] * capacity
        self._tail = 0  # grows without bound, wrapped only when indexing
        self.extend(values)

    def __len__(self) -> int:
        return min(self._tail, self.capacity)

    def _head(self) -> int:
        if self._tail > self.capacity:
            return (self._tail - self.capacity) % self.capacity
        return 0

    def push(self, value: T) -> None:
        """Append a value on the newest side."""
        self._data[self._tail % self.capacity] = value
        self._tail += 1

    def extend(self, values: Iterable[T]) -> None:
        for value in values:
            self.push(value)

    def clear(self) -> None:
        self._tail = 0

    def get(self, index: int) -> T | None:
        """Return the value at ``index`` (0 is the oldest), or None if out of range."""
        if not 0 <= index < len(self):
            return None
        return self._data[(self._head() + index) % self.capacity]  # type: ignore[return-value]

    def last(self) -> T | None:
        """Return the newest value, or None if empty."""
        return self.get(len(self) - 1) if self._tail else None

    def as_slices(self) -> tuple[list[T], list[T]]:
        """Return the contents as (older, newer) lists, both in oldest-to-newest order."""
        if self._tail <= self.capacity:
            return list(self._data[: self._tail]), []  # type: ignore[arg-type]
        head = self._head()
        return list(self._data[head:]), list(self._data[:head])  # type: ignore[arg-type]

    def __iter__(self) -> Iterator[T]:
        older, newer = self.as_slices()
        yield from older
        yield from newer

    def truncate_front(self, count: int) -> None:
        """Keep only the ``count`` most recent values."""
        if count >= len(self):
            return
        kept = list(self)[len(self) - count :] if count else []
        self._data = kept + [None] * (self.capacity - count)
        self._tail = count

    def __repr__(self) -> str:
        return f"Ring({list(self)!r})"