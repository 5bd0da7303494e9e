"""Clocked storage cells and the fixed-size ring queue built from them."""

from __future__ import annotations

import copy
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")


class Latch(Generic[T]):
    """A value that is handed to a partner latch only when it has changed."""

    def __init__(self, value: T = None) -> None:
        self.value = value
        self.changed = False

    def set(self, value: T) -> "Latch[T]":
        """Store a copy of ``value`` and mark the latch as changed."""
        self.value = copy.copy(value)
        self.changed = True
        return self

    def mark(self) -> "Latch[T]":
        """Mark the latch as changed after its value was edited in place."""
        self.changed = True
        return self

    def reset(self, value: T = None) -> None:
        """Clear the changed flag; the stored value is left alone."""
        self.changed = False

    def give(self, other: "Latch[T]") -> None:
        """Copy the value into ``other`` if this latch has changed."""
        if self.changed:
            other.value = copy.copy(self.value)
            other.changed = True
            self.changed = False

    def __repr__(self) -> str:
        return f"Latch({self.value!r}, changed={self.changed})"


class RingQueue:
    """A circular queue holding ``capacity`` items in ``capacity + 1`` slots."""

    def __init__(self, capacity: int, factory: Callable[[], Any]) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.slots = [factory() for _ in range(capacity + 1)]
        self.head = 0
        self.tail = 0

    def next_index(self, index: int) -> int:
        """Return the slot index that follows ``index``."""
        return (index + 1) % len(self.slots)

    def advance_head(self) -> int:
        """Move the head forward; return the slot it left."""
        old = self.head
        self.head = self.next_index(old)
        return old

    def advance_tail(self) -> int:
        """Move the tail forward; return the slot it left, now allocated."""
        old = self.tail
        self.tail = self.next_index(old)
        return old

    def front(self) -> Any:
        """Return the item in the head slot."""
        return self.slots[self.head]

    def pop(self) -> Any:
        """Drop the head item and return it."""
        item = self.front()
        self.advance_head()
        return item

    def is_empty(self) -> bool:
        return self.head == self.tail

    def is_full(self) -> bool:
        return self.next_index(self.tail) == self.head

    def __len__(self) -> int:
        return (self.tail - self.head) % len(self.slots)