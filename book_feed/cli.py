"""Keep a local Binance order book in sync and log its health.

Examples:
  python -m book_feed.cli --symbol BTCUSDT --duration 30
  SYMBOL=ETHUSDT RUN_DURATION_S=60 python -m book_feed.cli

Exit codes:
  0  clean stop (duration elapsed or interrupted)
  1  snapshot staleness ceiling exceeded or stream failure
"""

from __future__ import annotations

import argparse
import logging
import sys

from book_core.errors import BookSyncError
from book_core.types import Side
from book_feed import settings
from book_feed.logging_config import setup_logging
from book_feed.session import BookSession
from book_feed.snapshot import BinanceRestClient, BinanceSnapshotSource


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Synchronize a local order book from a REST snapshot and the depth stream.")
    ap.add_argument("--symbol", default=settings.SYMBOL, help="Trading pair, e.g. BTCUSDT")
    ap.add_argument("--duration", type=float, default=settings.RUN_DURATION_S, help="Seconds to run (0 = until interrupted)")
    ap.add_argument("--limit", type=int, default=settings.SNAPSHOT_LIMIT, help="REST snapshot depth")
    ap.add_argument(
        "--max-stale-snapshots",
        type=int,
        default=settings.SNAPSHOT_STALE_RETRY_MAX,
        help="Stale snapshots re-requested before giving up",
    )
    ap.add_argument("--no-validate", action="store_true", help="Skip per-update crossed-book checks")
    ap.add_argument("--log-level", default=settings.LOG_LEVEL)
    ap.add_argument("--log-dir", default=settings.LOG_DIR)
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    symbol = args.symbol.strip().upper()
    if not symbol:
        raise SystemExit("--symbol (or SYMBOL) is required")

    log_path = setup_logging(args.log_level, component="book", subdir=symbol, base_dir=args.log_dir)
    log = logging.getLogger("book_feed.cli")
    log.info("Logging to %s", log_path)
    log.info(
        "Config symbol=%s duration=%.0fs limit=%d max_stale_snapshots=%d validate=%s",
        symbol,
        args.duration,
        args.limit,
        args.max_stale_snapshots,
        not args.no_validate,
    )

    session = BookSession(
        symbol,
        snapshot_source=BinanceSnapshotSource(symbol, limit=args.limit, client=BinanceRestClient()),
        max_stale_snapshots=args.max_stale_snapshots,
        validate_updates=not args.no_validate,
    )
    try:
        session.run(duration_s=args.duration or None)
    except KeyboardInterrupt:
        log.info("Interrupted; stopping")
        session.close()
    except BookSyncError as exc:
        log.error("Session failed: %s", exc)
        return 1

    view = session.current_state()
    log.info(
        "Final book lastUpdateId=%s bid=%s ask=%s resyncs=%d anomalies=%d",
        view.last_update_id,
        session.top_of_book(Side.BID),
        session.top_of_book(Side.ASK),
        session.controller.resync_count,
        session.stats.anomalies,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
