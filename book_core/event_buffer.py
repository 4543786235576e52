from __future__ import annotations

from typing import Iterable, Iterator, List, Optional

from .types import DeltaEvent


class EventBuffer:
    """Arrival-ordered holding area for delta events received before the book is initialized.

    Append-only until drained. Drain happens exactly once; afterwards the buffer
    refuses new events and a resync starts a new instance instead.
    """

    def __init__(self, events: Optional[Iterable[DeltaEvent]] = None, max_size: Optional[int] = None):
        self.max_size = int(max_size) if max_size else None
        self._events: List[DeltaEvent] = list(events or [])
        self._drained = False

    def append(self, event: DeltaEvent) -> bool:
        """Append one event. Returns False when ``max_size`` would be exceeded."""
        if self._drained:
            raise RuntimeError("EventBuffer already drained")
        if self.max_size is not None and len(self._events) >= self.max_size:
            return False
        self._events.append(event)
        return True

    def peek_first(self) -> Optional[DeltaEvent]:
        return self._events[0] if self._events else None

    def drain(self) -> List[DeltaEvent]:
        if self._drained:
            raise RuntimeError("EventBuffer already drained")
        events, self._events = self._events, []
        self._drained = True
        return events

    @property
    def drained(self) -> bool:
        return self._drained

    def __len__(self) -> int:
        return len(self._events)

    def __bool__(self) -> bool:
        return bool(self._events)

    def __iter__(self) -> Iterator[DeltaEvent]:
        return iter(list(self._events))
