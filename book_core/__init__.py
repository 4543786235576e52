"""Order-book state, event buffering and snapshot/diff synchronization (no I/O)."""

from .errors import (
    BookSyncError,
    MalformedEvent,
    SequenceGap,
    SnapshotStalenessExceeded,
    StreamError,
    TransportError,
)
from .event_buffer import EventBuffer
from .order_book_state import OrderBookState
from .sync_controller import SyncController, SyncResult, SyncState
from .types import ApplyResult, BookView, DeltaEvent, PriceLevel, Side, Snapshot

__all__ = [
    "ApplyResult",
    "BookSyncError",
    "BookView",
    "DeltaEvent",
    "EventBuffer",
    "MalformedEvent",
    "OrderBookState",
    "PriceLevel",
    "SequenceGap",
    "Side",
    "Snapshot",
    "SnapshotStalenessExceeded",
    "StreamError",
    "SyncController",
    "SyncResult",
    "SyncState",
    "TransportError",
]
