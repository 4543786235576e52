from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from .errors import MalformedEvent


class Side(str, Enum):
    BID = "bid"
    ASK = "ask"


class PriceLevel(NamedTuple):
    price: Decimal
    qty: Decimal


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, bool):
        raise ValueError(f"not a decimal number: {value!r}")
    elif isinstance(value, (str, int, float)):
        try:
            dec = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"not a decimal number: {value!r}") from exc
    else:
        raise ValueError(f"not a decimal number: {value!r}")
    if not dec.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return dec


def _to_int(value, label: str) -> int:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{label} must be an integer (got {value!r})")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise ValueError(f"{label} must be an integer (got {value!r})")


def parse_levels(raw, label: str) -> Tuple[PriceLevel, ...]:
    """Parse ``[[price, qty], ...]`` into exact price levels.

    Extra trailing fields per level are ignored (some venues append counts).
    Negative quantities are rejected; zero is kept as the removal sentinel.
    """
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"{label} must be a list (got {type(raw).__name__})")
    levels: List[PriceLevel] = []
    for entry in raw:
        if not isinstance(entry, (list, tuple)) or len(entry) < 2:
            raise ValueError(f"{label} entry must be a [price, qty] pair (got {entry!r})")
        price = to_decimal(entry[0])
        qty = to_decimal(entry[1])
        if qty < 0:
            raise ValueError(f"{label} quantity must be non-negative (got {entry[1]!r})")
        levels.append(PriceLevel(price, qty))
    return tuple(levels)


def _side_payload(payload: Dict[str, Any], short: str, long: str):
    if short in payload:
        return payload[short]
    if long in payload:
        return payload[long]
    raise ValueError(f"missing {long!r}")


@dataclass(frozen=True)
class Snapshot:
    last_update_id: int
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Snapshot":
        """Build from a REST depth payload ``{lastUpdateId, bids, asks}``.

        Raises ValueError on a malformed payload.
        """
        if not isinstance(payload, dict):
            raise ValueError("snapshot payload must be a dict")
        if "bids" not in payload or "asks" not in payload or "lastUpdateId" not in payload:
            raise ValueError("snapshot payload missing required keys")
        return cls(
            last_update_id=_to_int(payload.get("lastUpdateId"), "lastUpdateId"),
            bids=parse_levels(payload.get("bids"), "bids"),
            asks=parse_levels(payload.get("asks"), "asks"),
        )


@dataclass(frozen=True)
class DeltaEvent:
    U: int
    u: int
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()
    event_time_ms: Optional[int] = None

    @classmethod
    def from_payload(cls, payload) -> "DeltaEvent":
        """Parse a depth-diff payload (``b``/``a`` or ``bids``/``asks`` keys).

        Raises MalformedEvent; nothing about the payload is trusted.
        """
        if isinstance(payload, DeltaEvent):
            return payload
        if not isinstance(payload, dict):
            raise MalformedEvent(f"event must be a dict (got {type(payload).__name__})")
        try:
            if "U" not in payload or "u" not in payload:
                raise ValueError("missing 'U'/'u'")
            first = _to_int(payload["U"], "U")
            last = _to_int(payload["u"], "u")
            if first > last:
                raise ValueError(f"U={first} is after u={last}")
            bids = parse_levels(_side_payload(payload, "b", "bids"), "bids")
            asks = parse_levels(_side_payload(payload, "a", "asks"), "asks")
            event_time = payload.get("E")
            event_time_ms = _to_int(event_time, "E") if event_time is not None else None
        except ValueError as exc:
            raise MalformedEvent(str(exc)) from exc
        return cls(U=first, u=last, bids=bids, asks=asks, event_time_ms=event_time_ms)


@dataclass(frozen=True)
class BookView:
    """Read-only copy of a book: bids best-first (descending), asks best-first (ascending)."""

    bids: Tuple[PriceLevel, ...]
    asks: Tuple[PriceLevel, ...]
    last_update_id: Optional[int]

    def best_bid(self) -> Optional[PriceLevel]:
        return self.bids[0] if self.bids else None

    def best_ask(self) -> Optional[PriceLevel]:
        return self.asks[0] if self.asks else None


class ApplyResult(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
