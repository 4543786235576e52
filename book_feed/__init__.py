"""Binance REST/websocket collaborators and the session that drives a synchronized book."""

from .session import BookSession, SessionStats
from .snapshot import BinanceRestClient, BinanceSnapshotSource
from .ws_stream import BinanceDepthStream, depth_stream_url

__all__ = [
    "BinanceDepthStream",
    "BinanceRestClient",
    "BinanceSnapshotSource",
    "BookSession",
    "SessionStats",
    "depth_stream_url",
]
