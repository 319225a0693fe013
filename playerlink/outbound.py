"""Outbound message queue."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable


class OutboundQueue:
    """Unbounded FIFO of encoded frames waiting to be sent.

    Entries leave the queue only through :meth:`drain_all` (or
    :meth:`clear` on shutdown). A failed send puts the unsent tail back with
    :meth:`push_front` so it stays ahead of anything queued since.
    """

    def __init__(self) -> None:
        self._entries: deque[str] = deque()

    def enqueue(self, entry: str) -> None:
        """Append a frame to the back of the queue."""
        self._entries.append(entry)

    def drain_all(self) -> list[str]:
        """Remove and return every queued frame, oldest first."""
        drained = list(self._entries)
        self._entries.clear()
        return drained

    def push_front(self, entries: Iterable[str]) -> None:
        """Return unsent frames to the front, keeping their order."""
        self._entries.extendleft(reversed(list(entries)))

    def clear(self) -> int:
        """Discard all frames and return how many were dropped."""
        count = len(self._entries)
        self._entries.clear()
        return count

    def peek(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)
