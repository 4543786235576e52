"""Consistency checks over book views and raw depth payloads.

These never mutate anything; callers decide whether an anomaly is worth a
warning, a counter or a failed assertion.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .types import BookView, to_decimal


def is_sorted(levels: Sequence[Sequence[Any]], order: str) -> bool:
    """True when ``levels`` prices are ascending (``"asc"``) or descending (``"desc"``)."""
    if order not in ("asc", "desc"):
        raise ValueError(f"order must be 'asc' or 'desc' (got {order!r})")
    prices = [to_decimal(level[0]) for level in levels]
    for prev, cur in zip(prices, prices[1:]):
        if order == "asc" and cur < prev:
            return False
        if order == "desc" and cur > prev:
            return False
    return True


def is_crossed(view: BookView) -> bool:
    best_bid = view.best_bid()
    best_ask = view.best_ask()
    if best_bid is None or best_ask is None:
        return False
    return best_bid.price >= best_ask.price


def validate_snapshot_fields(payload: Dict[str, Any]) -> bool:
    """Both sides present, non-empty, and every entry a numeric ``[price, qty]`` pair."""
    if not isinstance(payload, dict):
        return False
    for key in ("bids", "asks"):
        side = payload.get(key)
        if not isinstance(side, list) or not side:
            return False
        for entry in side:
            if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                return False
            try:
                to_decimal(entry[0])
                to_decimal(entry[1])
            except ValueError:
                return False
    return True


def check_book(view: BookView) -> List[str]:
    anomalies: List[str] = []
    if not is_sorted(view.bids, "desc"):
        anomalies.append("bids not sorted descending")
    if not is_sorted(view.asks, "asc"):
        anomalies.append("asks not sorted ascending")
    if is_crossed(view):
        anomalies.append(f"crossed book bid={view.best_bid().price} ask={view.best_ask().price}")
    for label, levels in (("bid", view.bids), ("ask", view.asks)):
        seen = set()
        for price, qty in levels:
            if qty <= 0:
                anomalies.append(f"non-positive {label} qty at {price}")
            if price in seen:
                anomalies.append(f"duplicate {label} price {price}")
            seen.add(price)
    return anomalies
