import asyncio
import contextlib
import json
import logging
import os
import random
import ssl
import time
from typing import Callable, Optional

from websockets.asyncio.client import connect as ws_connect  # type: ignore
from websockets.exceptions import ConnectionClosed  # type: ignore

from book_core.errors import StreamError
from book_feed.settings import BINANCE_WS_BASE_URL, DEPTH_SPEED


def depth_stream_url(symbol: str, speed: str = DEPTH_SPEED, base_url: str = BINANCE_WS_BASE_URL) -> str:
    stream = f"{symbol.strip().lower()}@depth"
    if speed:
        stream = f"{stream}@{speed}"
    return f"{base_url.rstrip('/')}/ws/{stream}"


class BinanceDepthStream:
    """Async websocket wrapper that routes diff-depth messages to a callback."""

    def __init__(
        self,
        ws_url: str,
        on_depth: Callable[[dict, int], None],
        on_open: Optional[Callable[[], None]] = None,
        on_status: Optional[Callable[[str, dict], None]] = None,
        insecure_tls: bool = False,
        reconnect: bool = True,
        ping_interval_s: int = 20,
        ping_timeout_s: int = 60,
        reconnect_backoff_s: float = 1.0,
        reconnect_backoff_max_s: float = 30.0,
        max_session_s: float = 23 * 3600 + 50 * 60,
        recv_poll_timeout_s: float = 5.0,
        max_queue: int = 256,
    ):
        self.ws_url = ws_url
        self.on_depth = on_depth
        self.on_open_cb = on_open
        self.on_status_cb = on_status
        self.insecure_tls = insecure_tls
        self.reconnect = reconnect

        self.ping_interval_s = max(0, int(ping_interval_s))
        self.ping_timeout_s = max(1, int(ping_timeout_s))
        self.reconnect_backoff_s = max(0.0, float(reconnect_backoff_s))
        self.reconnect_backoff_max_s = max(self.reconnect_backoff_s, float(reconnect_backoff_max_s))
        self.max_session_s = max(60.0, float(max_session_s))
        self.recv_poll_timeout_s = max(0.5, float(recv_poll_timeout_s))
        self.max_queue = max(1, int(max_queue))

        self.last_error: Optional[StreamError] = None
        self._ws = None
        self._stop = False
        self._log = logging.getLogger("book_feed.websocket")
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None

    def _emit_status(self, typ: str, details: dict) -> None:
        try:
            if self.on_status_cb:
                self.on_status_cb(typ, details)
        except Exception:
            self._log.exception("Status callback error (type=%s)", typ)

    def _fail(self, typ: str, details: dict) -> None:
        self.last_error = StreamError(f"{typ}: {details}")
        self._emit_status(typ, details)

    async def _ping_loop(self) -> None:
        if self.ping_interval_s <= 0 or self._ws is None:
            return
        while not self._stop:
            await asyncio.sleep(self.ping_interval_s)
            if self._stop or self._ws is None:
                return
            try:
                payload = os.urandom(4)
                pong_waiter = self._ws.ping(payload)
                self._emit_status("ws_ping", {"nbytes": len(payload)})
                await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout_s)
                self._emit_status("ws_pong", {"nbytes": len(payload)})
            except Exception as exc:
                self._fail("ws_ping_timeout", {"error": str(exc)})
                with contextlib.suppress(Exception):
                    await self._ws.close()
                return

    async def _read_loop(self, session_deadline: float) -> None:
        assert self._ws is not None
        while not self._stop:
            if time.monotonic() >= session_deadline:
                self._emit_status("ws_session_expired", {"max_session_s": self.max_session_s})
                return

            try:
                msg = await asyncio.wait_for(self._ws.recv(), timeout=self.recv_poll_timeout_s)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosed as exc:
                if self._stop:
                    return
                self._fail("ws_close", {"code": getattr(exc, "code", None), "msg": str(exc)})
                return
            except Exception as exc:
                self._fail("ws_error", {"error": str(exc)})
                return

            if msg is None:
                return

            recv_ms = int(time.time() * 1000)
            try:
                payload = json.loads(msg)
            except ValueError:
                self._log.exception("Failed to parse WS message")
                continue
            if not isinstance(payload, dict):
                continue

            # combined-stream envelope: {"stream": "...", "data": {...}}
            stream = payload.get("stream", "")
            data = payload.get("data", payload)
            if not isinstance(data, dict):
                continue

            if "@depth" not in stream and data.get("e") != "depthUpdate":
                continue
            try:
                self.on_depth(data, recv_ms)
            except Exception:
                self._log.exception("Callback error (stream=%s)", stream)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.insecure_tls:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def run_async(self) -> None:
        """Consume the stream until closed; reconnects only when ``reconnect`` is set."""
        self._loop = asyncio.get_running_loop()
        self._stop = False
        self._stop_event = asyncio.Event()
        attempt = 0

        while not self._stop:
            attempt += 1
            session_deadline = time.monotonic() + self.max_session_s
            ssl_ctx = self._ssl_context()
            try:
                connect_kwargs = {
                    "ping_interval": None,
                    "ping_timeout": None,
                    "close_timeout": 5,
                    "max_queue": self.max_queue,
                }
                if ssl_ctx is not None:
                    connect_kwargs["ssl"] = ssl_ctx
                async with ws_connect(self.ws_url, **connect_kwargs) as ws:
                    self._ws = ws
                    self.last_error = None
                    self._emit_status("ws_connect", {"attempt": attempt})
                    if self.on_open_cb:
                        self.on_open_cb()

                    ping_task = asyncio.create_task(self._ping_loop())
                    try:
                        await self._read_loop(session_deadline=session_deadline)
                    finally:
                        ping_task.cancel()
                        with contextlib.suppress(BaseException):
                            await ping_task
            except Exception as exc:
                self._fail("ws_run_exception", {"error": str(exc)})
                self._log.exception("WebSocket run exception")
            finally:
                self._ws = None

            if self._stop or not self.reconnect:
                break

            # Exponential backoff with jitter to respect connection attempt limits.
            base = self.reconnect_backoff_s
            cap = self.reconnect_backoff_max_s
            if base <= 0.0 or cap <= 0.0:
                backoff = 0.0
            else:
                backoff = min(cap, base * (2 ** max(0, attempt - 1)))
                backoff = backoff * (0.7 + 0.6 * random.random())
            self._emit_status("ws_reconnect_wait", {"sleep_s": float(backoff), "attempt": attempt})
            # close() cuts the wait short
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=backoff)

    def close(self) -> None:
        self._stop = True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        loop = self._loop
        ws = self._ws

        if running is not None and running is loop:
            if self._stop_event is not None:
                self._stop_event.set()
            if ws is not None:
                running.create_task(ws.close())
            return
        if loop is None or not loop.is_running():
            return
        # called from another thread
        if self._stop_event is not None:
            loop.call_soon_threadsafe(self._stop_event.set)
        if ws is not None:
            asyncio.run_coroutine_threadsafe(ws.close(), loop)
