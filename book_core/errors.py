from __future__ import annotations


class BookSyncError(Exception):
    """Base class for order-book synchronization errors."""


class TransportError(BookSyncError):
    """Snapshot or stream I/O failed (network, HTTP status, payload parse)."""


class StreamError(TransportError):
    """The delta stream transport failed or terminated unexpectedly."""


class MalformedEvent(BookSyncError):
    """A delta event is missing fields or carries invalid values."""


class SequenceGap(BookSyncError):
    """A delta event does not continue from the book's last update id."""

    def __init__(self, expected: int, got_U: int, got_u: int) -> None:
        self.expected = int(expected)
        self.got_U = int(got_U)
        self.got_u = int(got_u)
        super().__init__(f"gap expected U<={self.expected} got U={self.got_U} u={self.got_u}")


class SnapshotStalenessExceeded(BookSyncError):
    """Every fetched snapshot was older than the buffered stream, up to the retry ceiling."""

    def __init__(self, attempts: int, last_update_id: int, first_U: int) -> None:
        self.attempts = int(attempts)
        self.last_update_id = int(last_update_id)
        self.first_U = int(first_U)
        super().__init__(
            f"snapshot stale after {self.attempts} attempts "
            f"(lastUpdateId={self.last_update_id} < first buffered U={self.first_U})"
        )
