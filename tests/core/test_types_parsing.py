from __future__ import annotations

from decimal import Decimal

import pytest

from book_core.errors import MalformedEvent
from book_core.types import DeltaEvent, PriceLevel, Snapshot


def test_delta_event_accepts_wire_and_long_keys():
    wire = DeltaEvent.from_payload({"e": "depthUpdate", "E": 123, "U": 5, "u": 7, "b": [["1.5", "2"]], "a": []})
    long = DeltaEvent.from_payload({"U": 5, "u": 7, "bids": [["1.50", "2"]], "asks": []})

    assert wire.event_time_ms == 123
    assert wire.bids == (PriceLevel(Decimal("1.5"), Decimal("2")),)
    assert wire.bids == long.bids
    assert (long.U, long.u) == (5, 7)


@pytest.mark.parametrize(
    "payload",
    [
        {"u": 7, "b": [], "a": []},
        {"U": 5, "b": [], "a": []},
        {"U": "x", "u": 7, "b": [], "a": []},
        {"U": 8, "u": 7, "b": [], "a": []},
        {"U": 5, "u": 7, "b": "nope", "a": []},
        {"U": 5, "u": 7, "b": []},
        {"U": 5, "u": 7, "b": [["1.0"]], "a": []},
        {"U": 5, "u": 7, "b": [["abc", "1"]], "a": []},
        {"U": 5, "u": 7, "b": [["1.0", "-1"]], "a": []},
        {"U": 5, "u": 7, "b": [["NaN", "1"]], "a": []},
        ["U", 5],
    ],
)
def test_delta_event_rejects_malformed_payloads(payload):
    with pytest.raises(MalformedEvent):
        DeltaEvent.from_payload(payload)


def test_snapshot_from_payload_validates():
    snap = Snapshot.from_payload({"lastUpdateId": "42", "bids": [["10", "1"]], "asks": []})
    assert snap.last_update_id == 42
    assert snap.bids[0].price == Decimal("10")

    with pytest.raises(ValueError, match="missing"):
        Snapshot.from_payload({"bids": [], "asks": []})
    with pytest.raises(ValueError):
        Snapshot.from_payload({"lastUpdateId": 1, "bids": {}, "asks": []})
