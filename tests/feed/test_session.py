from __future__ import annotations

import asyncio
import threading
import time
from decimal import Decimal

import pytest

from book_core.errors import SnapshotStalenessExceeded, StreamError, TransportError
from book_core.sync_controller import SyncState
from book_core.types import Side, Snapshot
import book_feed.ws_stream as ws_mod
from book_feed.session import BookSession


def _snap(last_update_id: int, bids=(("10.0", "1"),), asks=(("10.1", "1"),)) -> Snapshot:
    return Snapshot.from_payload(
        {"lastUpdateId": last_update_id, "bids": [list(b) for b in bids], "asks": [list(a) for a in asks]}
    )


def _ev(U: int, u: int, b=(), a=()) -> dict:
    return {"e": "depthUpdate", "U": U, "u": u, "b": [list(x) for x in b], "a": [list(x) for x in a]}


async def _wait_until(cond, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not cond():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class ScriptStream:
    """Stands in for the websocket: runs a coroutine script against the session callbacks."""

    def __init__(self, on_depth, on_open, on_status, script):
        self.on_depth = on_depth
        self.on_open = on_open
        self.on_status = on_status
        self.script = script
        self.closed = False
        self.last_error = None

    async def run_async(self):
        await self.script(self)

    def send(self, payload):
        self.on_depth(payload, 0)

    def close(self):
        self.closed = True


class ScriptedSource:
    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.calls = 0

    def fetch_snapshot(self):
        self.calls += 1
        item = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(item, Exception):
            raise item
        return item


def _session(source, script, **kwargs) -> BookSession:
    kwargs.setdefault("heartbeat_sec", 3600)
    kwargs.setdefault("snapshot_retry_delay_s", 0.0)
    return BookSession(
        "btcusdt",
        snapshot_source=source,
        stream_factory=lambda on_depth, on_open, on_status: ScriptStream(on_depth, on_open, on_status, script),
        **kwargs,
    )


def test_session_buffers_syncs_and_applies_live_events():
    lives = []

    async def script(stream):
        stream.on_open()
        stream.send(_ev(95, 101, b=[("10.0", "0")]))
        await _wait_until(lambda: session.controller.is_live)
        stream.send(_ev(102, 102, b=[("9.9", "2")]))

    session = _session(ScriptedSource(_snap(100)), script, on_live=lives.append)
    session.run()

    assert lives == [101]
    view = session.current_state()
    assert view.last_update_id == 102
    assert session.top_of_book(Side.BID).price == Decimal("9.9")
    assert session.top_of_book(Side.ASK).price == Decimal("10.1")
    assert session.stats.depth_msgs == 2
    assert session.closed


def test_session_resyncs_after_gap_without_reconnecting():
    resyncs = []

    async def script(stream):
        stream.on_open()
        await _wait_until(lambda: session.controller.is_live)
        stream.send(_ev(101, 101))
        stream.send(_ev(105, 110, b=[("11", "1")]))
        await _wait_until(lambda: session.controller.resync_count == 1 and session.controller.is_live)
        stream.send(_ev(111, 111))

    source = ScriptedSource(_snap(100), _snap(108))
    session = _session(source, script, on_resync=resyncs.append)
    session.run()

    assert len(resyncs) == 1
    assert source.calls == 2
    assert session.stats.stream_connects == 1
    assert session.current_state().last_update_id == 111
    assert session.top_of_book(Side.BID).price == Decimal("11")


def test_session_retries_transport_errors():
    async def script(stream):
        stream.on_open()
        stream.send(_ev(99, 101))
        await _wait_until(lambda: session.controller.is_live)

    session = _session(ScriptedSource(TransportError("down"), _snap(100)), script)
    session.run()

    assert session.stats.snapshot_failures == 1
    assert session.current_state().last_update_id == 101


def test_session_surfaces_staleness_ceiling():
    async def script(stream):
        stream.on_open()
        stream.send(_ev(50, 55))
        await _wait_until(lambda: stream.closed)

    session = _session(ScriptedSource(_snap(40)), script, max_stale_snapshots=1)

    with pytest.raises(SnapshotStalenessExceeded):
        session.run()
    assert session.controller.state == SyncState.CLOSED
    assert session.current_state().last_update_id is None


def test_late_snapshot_after_close_is_dropped():
    release = threading.Event()

    class BlockingSource:
        def fetch_snapshot(self):
            release.wait(2.0)
            return _snap(100)

    async def script(stream):
        stream.on_open()
        stream.send(_ev(99, 101))
        await asyncio.sleep(0.05)
        session.close()
        release.set()

    session = _session(BlockingSource(), script)
    session.run()

    assert session.controller.state == SyncState.CLOSED
    assert session.controller.book is None
    assert session.current_state().last_update_id is None


def test_duration_closes_session():
    async def script(stream):
        stream.on_open()
        await _wait_until(lambda: stream.closed, timeout=5.0)

    session = _session(ScriptedSource(_snap(100)), script)
    session.run(duration_s=0.1)

    assert session.closed
    assert session.controller.state == SyncState.CLOSED


def test_reconnect_restarts_local_book():
    async def script(stream):
        stream.on_open()
        await _wait_until(lambda: session.controller.is_live)
        stream.on_open()
        assert session.controller.book is None
        await _wait_until(lambda: session.controller.is_live)

    source = ScriptedSource(_snap(100), _snap(200))
    session = _session(source, script)
    session.run()

    assert session.stats.stream_connects == 2
    assert session.current_state().last_update_id == 200


def test_stream_failure_is_raised_when_stream_ends_on_its_own():
    async def script(stream):
        stream.on_open()
        stream.last_error = StreamError("ws_close: 1006")

    session = _session(ScriptedSource(_snap(100)), script)

    with pytest.raises(StreamError):
        session.run()


class _RefusingConnect:
    async def __aenter__(self):
        raise OSError("connection refused")

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _HangingConnect:
    async def __aenter__(self):
        await asyncio.sleep(3600)

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _depth_stream_session(**kwargs) -> BookSession:
    def factory(on_depth, on_open, on_status):
        return ws_mod.BinanceDepthStream(
            ws_url="wss://example.invalid/ws/btcusdt@depth",
            on_depth=on_depth,
            on_open=on_open,
            on_status=on_status,
            reconnect=True,
            ping_interval_s=0,
            reconnect_backoff_s=3.0,
            reconnect_backoff_max_s=3.0,
        )

    kwargs.setdefault("heartbeat_sec", 3600)
    return BookSession("btcusdt", snapshot_source=ScriptedSource(_snap(100)), stream_factory=factory, **kwargs)


def test_duration_stops_promptly_during_reconnect_backoff(monkeypatch):
    monkeypatch.setattr(ws_mod, "ws_connect", lambda *a, **k: _RefusingConnect())
    session = _depth_stream_session()

    started = time.monotonic()
    session.run(duration_s=0.2)
    elapsed = time.monotonic() - started

    assert elapsed < 1.5
    assert session.closed
    assert session.stats.stream_connects == 0


def test_duration_cancels_a_stuck_connect(monkeypatch):
    monkeypatch.setattr(ws_mod, "ws_connect", lambda *a, **k: _HangingConnect())
    session = _depth_stream_session(close_grace_s=0.1)

    started = time.monotonic()
    session.run(duration_s=0.2)
    elapsed = time.monotonic() - started

    assert elapsed < 1.5
    assert session.controller.state == SyncState.CLOSED
