from __future__ import annotations

import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


SYMBOL = os.getenv("SYMBOL", "BTCUSDT").strip().upper()

BINANCE_REST_BASE_URL = os.getenv("BINANCE_REST_BASE_URL", "https://api.binance.com")
BINANCE_WS_BASE_URL = os.getenv("BINANCE_WS_BASE_URL", "wss://stream.binance.com:9443")
# "" for the 1000ms stream, "100ms" for the fast one
DEPTH_SPEED = os.getenv("DEPTH_SPEED", "").strip()

# REST snapshot
SNAPSHOT_LIMIT = _env_int("SNAPSHOT_LIMIT", 1000)
SNAPSHOT_TIMEOUT_S = _env_float("SNAPSHOT_TIMEOUT_S", 10.0)
SNAPSHOT_RETRY_MAX = _env_int("SNAPSHOT_RETRY_MAX", 3)
SNAPSHOT_RETRY_BACKOFF_S = _env_float("SNAPSHOT_RETRY_BACKOFF_S", 0.5)
SNAPSHOT_RETRY_BACKOFF_MAX_S = _env_float("SNAPSHOT_RETRY_BACKOFF_MAX_S", 5.0)
# how many stale snapshots in a row are re-requested before giving up
SNAPSHOT_STALE_RETRY_MAX = _env_int("SNAPSHOT_STALE_RETRY_MAX", 5)
MAX_BUFFER_EVENTS = _env_int("MAX_BUFFER_EVENTS", 200_000)

# WS keepalive/reconnect
WS_PING_INTERVAL_S = _env_int("WS_PING_INTERVAL_S", 20)
WS_PING_TIMEOUT_S = _env_int("WS_PING_TIMEOUT_S", 60)
WS_RECONNECT = _env_bool("WS_RECONNECT", True)
WS_RECONNECT_BACKOFF_S = _env_float("WS_RECONNECT_BACKOFF_S", 1.0)
WS_RECONNECT_BACKOFF_MAX_S = _env_float("WS_RECONNECT_BACKOFF_MAX_S", 30.0)
WS_MAX_SESSION_S = _env_float("WS_MAX_SESSION_S", float(23 * 3600 + 50 * 60))

# TLS verification should remain enabled by default.
INSECURE_TLS = _env_bool("INSECURE_TLS", False)

HEARTBEAT_SEC = _env_float("HEARTBEAT_SEC", 30.0)
# 0 runs until interrupted
RUN_DURATION_S = _env_float("RUN_DURATION_S", 0.0)
VALIDATE_UPDATES = _env_bool("VALIDATE_UPDATES", True)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
