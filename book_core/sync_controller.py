from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from .errors import MalformedEvent, SequenceGap, SnapshotStalenessExceeded
from .event_buffer import EventBuffer
from .order_book_state import OrderBookState
from .protocols import SnapshotSource
from .types import ApplyResult, BookView, DeltaEvent, PriceLevel, Side, Snapshot


log = logging.getLogger("book_core.sync")


class SyncState(str, Enum):
    CONNECTING = "connecting"
    BUFFERING = "buffering"
    AWAITING_SNAPSHOT = "awaiting_snapshot"
    REPLAYING = "replaying"
    LIVE = "live"
    RESYNC_REQUIRED = "resync_required"
    CLOSED = "closed"


@dataclass
class SyncResult:
    action: str  # "buffered" | "applied" | "skipped" | "rejected" | "gap" | "ignored"
    details: str = ""


class SyncController:
    """State machine for Binance diff-depth local book synchronization.

    I/O-free: the caller connects the stream, fetches snapshots and hands both
    in through ``feed`` and ``offer_snapshot`` from a single owner.

    Key behaviors:
      - buffer every event until a snapshot is accepted
      - reject snapshots older than the first buffered event (bounded retries)
      - drop buffered events already covered by the snapshot, replay the rest in arrival order
      - apply live events directly; on a sequence gap discard the book and wait for a new snapshot
    """

    def __init__(
        self,
        max_stale_snapshots: int = 5,
        max_buffer_size: Optional[int] = None,
        on_resync: Optional[Callable[[str], None]] = None,
        on_live: Optional[Callable[[int], None]] = None,
        on_state_change: Optional[Callable[[SyncState, SyncState, str], None]] = None,
    ):
        if int(max_stale_snapshots) < 0:
            raise ValueError(f"max_stale_snapshots must be >= 0 (got {max_stale_snapshots!r})")
        self.max_stale_snapshots = int(max_stale_snapshots)
        self.max_buffer_size = int(max_buffer_size) if max_buffer_size else None
        self.on_resync = on_resync
        self.on_live = on_live
        self.on_state_change = on_state_change

        self.state = SyncState.CONNECTING
        self.book: Optional[OrderBookState] = None
        self.buffer = self._new_buffer()
        self.stale_snapshots = 0
        self.resync_count = 0
        self.applied_count = 0
        self.skipped_count = 0
        self.rejected_count = 0

    def _new_buffer(self, events: Iterable[DeltaEvent] = ()) -> EventBuffer:
        events = list(events)
        if self.max_buffer_size:
            # newest half only, so arrivals during the next fetch still fit
            keep = max(1, self.max_buffer_size // 2)
            if len(events) > keep:
                log.warning("Resync carry of %d events trimmed to newest %d", len(events), keep)
                events = events[-keep:]
        return EventBuffer(events, max_size=self.max_buffer_size)

    def _notify(self, cb: Optional[Callable], label: str, *args) -> None:
        if cb is None:
            return
        try:
            cb(*args)
        except Exception:
            log.exception("%s callback error", label)

    def _set_state(self, new_state: SyncState, reason: str = "") -> None:
        if self.state == new_state:
            return
        prev = self.state
        self.state = new_state
        log.info("Sync state %s -> %s (%s)", prev.value, new_state.value, reason)
        self._notify(self.on_state_change, "on_state_change", prev, new_state, reason)

    @property
    def needs_snapshot(self) -> bool:
        return self.state in (SyncState.BUFFERING, SyncState.AWAITING_SNAPSHOT)

    @property
    def is_live(self) -> bool:
        return self.state == SyncState.LIVE

    @property
    def closed(self) -> bool:
        return self.state == SyncState.CLOSED

    def on_stream_connected(self) -> None:
        if self.state != SyncState.CONNECTING:
            raise RuntimeError(f"stream already connected (state={self.state.value}); call restart() first")
        self._set_state(SyncState.BUFFERING, "stream_connected")

    def restart(self, reason: str = "restart") -> None:
        """Forget all local state and wait for a new stream connection."""
        if self.closed:
            raise RuntimeError("SyncController is closed")
        self.book = None
        self.buffer = self._new_buffer()
        self.stale_snapshots = 0
        self._set_state(SyncState.CONNECTING, reason)

    def request_snapshot(self) -> None:
        if self.state == SyncState.BUFFERING:
            self._set_state(SyncState.AWAITING_SNAPSHOT, "snapshot_requested")
        elif self.state != SyncState.AWAITING_SNAPSHOT:
            raise RuntimeError(f"cannot request a snapshot in state {self.state.value}")

    def feed(self, payload) -> SyncResult:
        """Feed one depth-diff payload (dict or DeltaEvent) in arrival order."""
        if self.closed:
            return SyncResult("ignored", "closed")

        try:
            event = DeltaEvent.from_payload(payload)
        except MalformedEvent as exc:
            self.rejected_count += 1
            log.warning("Rejected malformed depth event: %s", exc)
            return SyncResult("rejected", str(exc))

        if self.state == SyncState.CONNECTING:
            # data flowing proves the connection is up
            self.on_stream_connected()

        if self.needs_snapshot:
            if not self.buffer.append(event):
                reason = f"buffer_overflow max={self.max_buffer_size}"
                log.warning("Depth buffer overflow; discarding %d buffered events", len(self.buffer))
                self.buffer = self._new_buffer([event])
                self.stale_snapshots = 0
                self._notify(self.on_resync, "on_resync", reason)
                return SyncResult("gap", reason)
            return SyncResult("buffered", f"buffer={len(self.buffer)}")

        return self._apply_live(event)

    def _apply_live(self, event: DeltaEvent) -> SyncResult:
        if self.book is None:
            raise RuntimeError(f"no local book to apply to (state={self.state.value})")
        try:
            result = self.book.apply(event)
        except SequenceGap as gap:
            self._enter_resync(str(gap), [event])
            return SyncResult("gap", str(gap))

        if result is ApplyResult.SKIPPED:
            self.skipped_count += 1
            return SyncResult("skipped", f"u={event.u} lastUpdateId={self.book.last_update_id}")
        self.applied_count += 1
        return SyncResult("applied", f"lastUpdateId={self.book.last_update_id}")

    def _enter_resync(self, reason: str, carry: Iterable[DeltaEvent]) -> None:
        self.resync_count += 1
        log.warning("Sequence gap; local book discarded, resync #%d: %s", self.resync_count, reason)
        self._set_state(SyncState.RESYNC_REQUIRED, reason)
        self.book = None
        # the offending event and anything queued behind it stay relevant for the next snapshot
        self.buffer = self._new_buffer(carry)
        self.stale_snapshots = 0
        self._notify(self.on_resync, "on_resync", reason)
        self._set_state(SyncState.AWAITING_SNAPSHOT, "resync")

    def offer_snapshot(self, snapshot: Snapshot) -> bool:
        """Validate a fetched snapshot against the buffer and, if fresh enough, sync from it.

        Returns False when the snapshot was not used (stale, or the controller
        no longer wants one); the caller re-requests while ``needs_snapshot``.
        Raises SnapshotStalenessExceeded once more than ``max_stale_snapshots``
        snapshots in a row were stale.
        """
        if self.closed:
            log.info("Ignoring snapshot lastUpdateId=%s: controller closed", snapshot.last_update_id)
            return False
        if not self.needs_snapshot:
            log.warning(
                "Ignoring unexpected snapshot lastUpdateId=%s (state=%s)", snapshot.last_update_id, self.state.value
            )
            return False
        self.request_snapshot()

        lu = int(snapshot.last_update_id)
        first = self.buffer.peek_first()
        if first is not None and lu < first.U:
            self.stale_snapshots += 1
            if self.stale_snapshots > self.max_stale_snapshots:
                attempts = self.stale_snapshots
                self.close("snapshot_staleness_exceeded")
                raise SnapshotStalenessExceeded(attempts=attempts, last_update_id=lu, first_U=first.U)
            log.warning(
                "Stale snapshot lastUpdateId=%d < first buffered U=%d; re-requesting (%d/%d)",
                lu,
                first.U,
                self.stale_snapshots,
                self.max_stale_snapshots,
            )
            return False

        self.stale_snapshots = 0
        book = OrderBookState()
        book.initialize(snapshot)
        self.book = book
        self._set_state(SyncState.REPLAYING, f"snapshot lastUpdateId={lu}")

        buffered = self.buffer.drain()
        pending = [ev for ev in buffered if ev.u > lu]
        log.info(
            "Snapshot accepted lastUpdateId=%d; replaying %d of %d buffered events", lu, len(pending), len(buffered)
        )
        for idx, ev in enumerate(pending):
            try:
                book.apply(ev)
            except SequenceGap as gap:
                self._enter_resync(f"replay {gap}", pending[idx:])
                return True
            self.applied_count += 1

        self._set_state(SyncState.LIVE, f"lastUpdateId={book.last_update_id}")
        self._notify(self.on_live, "on_live", book.last_update_id)
        return True

    def synchronize(self, source: SnapshotSource) -> None:
        """Blocking snapshot loop: fetch and offer until the book is live.

        TransportError from the source propagates with local state untouched.
        """
        self.request_snapshot()
        while self.needs_snapshot:
            snapshot = source.fetch_snapshot()
            self.offer_snapshot(snapshot)

    def top_of_book(self, side: Side) -> Optional[PriceLevel]:
        if self.book is None:
            return None
        return self.book.top_of_book(side)

    def current_state(self) -> BookView:
        if self.book is None:
            return BookView(bids=(), asks=(), last_update_id=None)
        return self.book.view()

    def close(self, reason: str = "closed") -> None:
        """Stop accepting events and snapshots; the book keeps whatever it held."""
        self._set_state(SyncState.CLOSED, reason)
