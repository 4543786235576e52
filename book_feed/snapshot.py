from __future__ import annotations

import logging
import time

import requests

from book_core.errors import TransportError
from book_core.types import Snapshot
from book_core.validation import validate_snapshot_fields
from book_feed.settings import (
    BINANCE_REST_BASE_URL,
    SNAPSHOT_LIMIT,
    SNAPSHOT_RETRY_BACKOFF_MAX_S,
    SNAPSHOT_RETRY_BACKOFF_S,
    SNAPSHOT_RETRY_MAX,
    SNAPSHOT_TIMEOUT_S,
)


log = logging.getLogger("book_feed.snapshot")


class BinanceRestClient:
    def __init__(self, base_url: str | None = None, timeout_s: float | None = None, session=None) -> None:
        self.base_url = (base_url or BINANCE_REST_BASE_URL).rstrip("/")
        self.timeout_s = SNAPSHOT_TIMEOUT_S if timeout_s is None else float(timeout_s)
        self.session = session or requests.Session()

    def get_order_book(self, symbol: str, limit: int) -> dict:
        url = f"{self.base_url}/api/v3/depth"
        resp = self.session.get(url, params={"symbol": symbol, "limit": limit}, timeout=self.timeout_s)
        resp.raise_for_status()
        return resp.json()


def _call_with_retry(fn):
    attempts = max(1, int(SNAPSHOT_RETRY_MAX))
    backoff_s = max(0.0, float(SNAPSHOT_RETRY_BACKOFF_S))
    backoff_max_s = max(backoff_s, float(SNAPSHOT_RETRY_BACKOFF_MAX_S))
    delay = backoff_s
    last_exc = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            last_exc = exc
            if attempt >= attempts:
                break
            log.warning("Snapshot request failed (attempt %d/%d): %s", attempt, attempts, exc)
            if delay > 0:
                time.sleep(delay)
                delay = min(backoff_max_s, delay * 2)
    raise last_exc


class BinanceSnapshotSource:
    """Fetches ``/api/v3/depth`` snapshots for one symbol as parsed Snapshot objects."""

    def __init__(self, symbol: str, limit: int = SNAPSHOT_LIMIT, client=None) -> None:
        self.symbol = symbol.upper().strip()
        self.limit = int(limit)
        self.client = client or BinanceRestClient()
        self.fetch_count = 0

    def fetch_snapshot(self) -> Snapshot:
        self.fetch_count += 1
        try:
            payload = _call_with_retry(lambda: self.client.get_order_book(symbol=self.symbol, limit=self.limit))
        except Exception as exc:
            raise TransportError(f"REST snapshot for {self.symbol} failed: {exc}") from exc
        try:
            snapshot = Snapshot.from_payload(payload)
        except ValueError as exc:
            raise TransportError(f"Invalid snapshot payload: {exc}") from exc
        if not validate_snapshot_fields(payload):
            log.warning("Snapshot %s lastUpdateId=%d has an empty or irregular side", self.symbol, snapshot.last_update_id)
        log.info(
            "Fetched snapshot %s lastUpdateId=%d bids=%d asks=%d",
            self.symbol,
            snapshot.last_update_id,
            len(snapshot.bids),
            len(snapshot.asks),
        )
        return snapshot
