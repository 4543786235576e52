from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from book_core.errors import SnapshotStalenessExceeded, TransportError
from book_core.protocols import DeltaStreamSource, SnapshotSource
from book_core.sync_controller import SyncController, SyncState
from book_core.types import BookView, PriceLevel, Side
from book_core.validation import check_book
from book_feed.settings import (
    HEARTBEAT_SEC,
    INSECURE_TLS,
    MAX_BUFFER_EVENTS,
    SNAPSHOT_STALE_RETRY_MAX,
    VALIDATE_UPDATES,
    WS_MAX_SESSION_S,
    WS_PING_INTERVAL_S,
    WS_PING_TIMEOUT_S,
    WS_RECONNECT,
    WS_RECONNECT_BACKOFF_MAX_S,
    WS_RECONNECT_BACKOFF_S,
)
from book_feed.snapshot import BinanceSnapshotSource
from book_feed.ws_stream import BinanceDepthStream, depth_stream_url


log = logging.getLogger("book_feed.session")

_STREAM_FAILURES = ("ws_close", "ws_error", "ws_run_exception", "ws_ping_timeout")


@dataclass
class SessionStats:
    depth_msgs: int = 0
    snapshot_requests: int = 0
    snapshot_failures: int = 0
    stream_connects: int = 0
    stream_errors: int = 0
    anomalies: int = 0


def _default_stream_factory(symbol: str):
    def factory(on_depth, on_open, on_status):
        return BinanceDepthStream(
            ws_url=depth_stream_url(symbol),
            on_depth=on_depth,
            on_open=on_open,
            on_status=on_status,
            insecure_tls=INSECURE_TLS,
            reconnect=WS_RECONNECT,
            ping_interval_s=WS_PING_INTERVAL_S,
            ping_timeout_s=WS_PING_TIMEOUT_S,
            reconnect_backoff_s=WS_RECONNECT_BACKOFF_S,
            reconnect_backoff_max_s=WS_RECONNECT_BACKOFF_MAX_S,
            max_session_s=WS_MAX_SESSION_S,
        )

    return factory


def _fmt_level(level: Optional[PriceLevel]) -> str:
    if level is None:
        return "-"
    return f"{level.price}x{level.qty}"


class BookSession:
    """Owns one synchronized book: a depth stream, a snapshot source and the controller.

    Everything that touches the controller runs on the session's event loop.
    The blocking REST fetch runs in the default executor and its result is
    handed back to the loop; a result arriving after ``close()`` is dropped.
    """

    def __init__(
        self,
        symbol: str,
        snapshot_source: Optional[SnapshotSource] = None,
        stream_factory: Optional[Callable] = None,
        max_stale_snapshots: int = SNAPSHOT_STALE_RETRY_MAX,
        max_buffer_size: Optional[int] = MAX_BUFFER_EVENTS,
        validate_updates: bool = VALIDATE_UPDATES,
        heartbeat_sec: float = HEARTBEAT_SEC,
        snapshot_retry_delay_s: float = 1.0,
        close_grace_s: float = 2.0,
        on_resync: Optional[Callable[[str], None]] = None,
        on_live: Optional[Callable[[int], None]] = None,
    ):
        self.symbol = symbol.upper().strip()
        self.snapshot_source = snapshot_source or BinanceSnapshotSource(self.symbol)
        self.validate_updates = validate_updates
        self.heartbeat_sec = float(heartbeat_sec)
        self.snapshot_retry_delay_s = max(0.0, float(snapshot_retry_delay_s))
        self.close_grace_s = max(0.0, float(close_grace_s))
        self.user_on_resync = on_resync
        self.user_on_live = on_live

        self.controller = SyncController(
            max_stale_snapshots=max_stale_snapshots,
            max_buffer_size=max_buffer_size,
            on_resync=self._handle_resync,
            on_live=self._handle_live,
        )
        factory = stream_factory or _default_stream_factory(self.symbol)
        self.stream: DeltaStreamSource = factory(self.handle_depth, self.handle_open, self.handle_status)

        self.stats = SessionStats()
        self.fatal: Optional[BaseException] = None
        self._closed = False
        self._snapshot_task: Optional[asyncio.Task] = None
        self._last_hb = time.monotonic()

    # ---- controller notifications -------------------------------------------------

    def _handle_resync(self, reason: str) -> None:
        log.warning("%s book resync: %s", self.symbol, reason)
        if self.user_on_resync:
            self.user_on_resync(reason)

    def _handle_live(self, last_update_id: int) -> None:
        log.info(
            "%s book live lastUpdateId=%s bid=%s ask=%s",
            self.symbol,
            last_update_id,
            _fmt_level(self.controller.top_of_book(Side.BID)),
            _fmt_level(self.controller.top_of_book(Side.ASK)),
        )
        if self.user_on_live:
            self.user_on_live(last_update_id)

    # ---- stream callbacks ---------------------------------------------------------

    def handle_open(self) -> None:
        if self._closed:
            return
        self.stats.stream_connects += 1
        if self.controller.state != SyncState.CONNECTING:
            # a new connection does not continue the old sequence
            log.warning("%s stream reconnected; discarding local book", self.symbol)
            self.controller.restart("stream_reconnected")
        self.controller.on_stream_connected()
        self._ensure_snapshot_task()

    def handle_status(self, typ: str, details: dict) -> None:
        if typ in _STREAM_FAILURES:
            self.stats.stream_errors += 1
            log.warning("%s stream %s %s", self.symbol, typ, details)
        else:
            log.debug("%s stream %s %s", self.symbol, typ, details)

    def handle_depth(self, data: dict, recv_ms: int) -> None:
        if self._closed:
            return
        self.stats.depth_msgs += 1
        result = self.controller.feed(data)

        if result.action == "applied" and self.validate_updates:
            bid = self.controller.top_of_book(Side.BID)
            ask = self.controller.top_of_book(Side.ASK)
            if bid is not None and ask is not None and bid.price >= ask.price:
                self.stats.anomalies += 1
                log.warning("%s crossed book bid=%s ask=%s (%s)", self.symbol, bid.price, ask.price, result.details)

        if self.controller.needs_snapshot:
            self._ensure_snapshot_task()
        self.heartbeat()

    # ---- snapshot acquisition -----------------------------------------------------

    def _ensure_snapshot_task(self) -> None:
        if self._closed or self.fatal is not None:
            return
        if self._snapshot_task is not None and not self._snapshot_task.done():
            return
        self._snapshot_task = asyncio.get_running_loop().create_task(self._snapshot_loop())

    async def _snapshot_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closed and self.controller.needs_snapshot:
            self.controller.request_snapshot()
            self.stats.snapshot_requests += 1
            try:
                snapshot = await loop.run_in_executor(None, self.snapshot_source.fetch_snapshot)
            except TransportError as exc:
                self.stats.snapshot_failures += 1
                log.warning("%s snapshot fetch failed: %s; retrying in %.1fs", self.symbol, exc, self.snapshot_retry_delay_s)
                await asyncio.sleep(self.snapshot_retry_delay_s)
                continue

            if self._closed:
                log.info("%s session closed; dropping late snapshot lastUpdateId=%s", self.symbol, snapshot.last_update_id)
                return
            try:
                self.controller.offer_snapshot(snapshot)
            except SnapshotStalenessExceeded as exc:
                log.error("%s giving up: %s", self.symbol, exc)
                self.fatal = exc
                self.close()
                return

    # ---- lifecycle ----------------------------------------------------------------

    async def run_async(self, duration_s: Optional[float] = None) -> None:
        """Run until the stream ends, ``close()`` is called, or ``duration_s`` elapses."""
        stream_task = asyncio.create_task(self.stream.run_async())
        ended_by_stream = False
        try:
            await asyncio.wait({stream_task}, timeout=duration_s or None)
            if not stream_task.done():
                log.info("%s run duration %.1fs elapsed; closing", self.symbol, duration_s)
                self.close()
                await asyncio.wait({stream_task}, timeout=self.close_grace_s)
                if not stream_task.done():
                    log.warning("%s stream still running %.1fs after close; cancelling", self.symbol, self.close_grace_s)
            else:
                ended_by_stream = not self._closed
            if stream_task.done():
                stream_task.result()
        finally:
            self.close()
            if not stream_task.done():
                stream_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stream_task
            task = self._snapshot_task
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self.heartbeat(force=True)

        if self.fatal is not None:
            raise self.fatal
        stream_error = getattr(self.stream, "last_error", None)
        if ended_by_stream and stream_error is not None:
            raise stream_error

    def run(self, duration_s: Optional[float] = None) -> None:
        asyncio.run(self.run_async(duration_s))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.stream.close()
        except Exception:
            log.exception("Failed to close stream")
        if not self.controller.closed:
            self.controller.close("session_closed")

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- reads --------------------------------------------------------------------

    def top_of_book(self, side: Side) -> Optional[PriceLevel]:
        return self.controller.top_of_book(side)

    def current_state(self) -> BookView:
        return self.controller.current_state()

    def heartbeat(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_hb < self.heartbeat_sec:
            return
        self._last_hb = now

        ctl = self.controller
        view = ctl.current_state()
        if self.validate_updates and view.last_update_id is not None:
            for anomaly in check_book(view):
                self.stats.anomalies += 1
                log.warning("%s book anomaly: %s", self.symbol, anomaly)

        log.info(
            "HEARTBEAT %s state=%s lastUpdateId=%s bids=%d asks=%d bid=%s ask=%s buffer=%d "
            "depth_msgs=%d applied=%d skipped=%d rejected=%d resyncs=%d snapshots=%d anomalies=%d",
            self.symbol,
            ctl.state.value,
            view.last_update_id,
            len(view.bids),
            len(view.asks),
            _fmt_level(view.best_bid()),
            _fmt_level(view.best_ask()),
            len(ctl.buffer),
            self.stats.depth_msgs,
            ctl.applied_count,
            ctl.skipped_count,
            ctl.rejected_count,
            ctl.resync_count,
            self.stats.snapshot_requests,
            self.stats.anomalies,
        )
