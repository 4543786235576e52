from __future__ import annotations

import logging

import book_feed.cli as cli_mod
from book_core.errors import SnapshotStalenessExceeded
from book_core.types import BookView


class _FakeSession:
    instances = []

    def __init__(self, symbol, snapshot_source=None, max_stale_snapshots=None, validate_updates=True):
        self.symbol = symbol
        self.snapshot_source = snapshot_source
        self.max_stale_snapshots = max_stale_snapshots
        self.validate_updates = validate_updates
        self.run_args = None
        self.fail = False
        _FakeSession.instances.append(self)

    def run(self, duration_s=None):
        self.run_args = duration_s
        if self.fail:
            raise SnapshotStalenessExceeded(attempts=3, last_update_id=1, first_U=2)

    def close(self):
        pass

    def current_state(self):
        return BookView(bids=(), asks=(), last_update_id=None)

    def top_of_book(self, side):
        return None

    class controller:
        resync_count = 0

    class stats:
        anomalies = 0


def _reset_root_logging():
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()


def test_main_runs_session_with_cli_overrides(monkeypatch, tmp_path):
    _FakeSession.instances.clear()
    monkeypatch.setattr(cli_mod, "BookSession", _FakeSession)

    try:
        rc = cli_mod.main(
            ["--symbol", "ethusdt", "--duration", "5", "--max-stale-snapshots", "2", "--no-validate", "--log-dir", str(tmp_path)]
        )
    finally:
        _reset_root_logging()

    assert rc == 0
    session = _FakeSession.instances[-1]
    assert session.symbol == "ETHUSDT"
    assert session.run_args == 5.0
    assert session.max_stale_snapshots == 2
    assert session.validate_updates is False
    assert session.snapshot_source.symbol == "ETHUSDT"
    assert list((tmp_path / "book" / "ETHUSDT").glob("*.log"))


def test_main_reports_fatal_sync_failure(monkeypatch, tmp_path):
    class FailingSession(_FakeSession):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.fail = True

    monkeypatch.setattr(cli_mod, "BookSession", FailingSession)

    try:
        rc = cli_mod.main(["--symbol", "BTCUSDT", "--log-dir", str(tmp_path)])
    finally:
        _reset_root_logging()

    assert rc == 1
