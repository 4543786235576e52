from __future__ import annotations

from decimal import Decimal
from itertools import islice
from typing import Iterator, List, Optional, Tuple

from sortedcontainers import SortedDict

from .errors import SequenceGap
from .types import ApplyResult, BookView, DeltaEvent, PriceLevel, Side, Snapshot


class OrderBookState:
    """In-memory L2 book keyed by exact Decimal price.

    ``last_update_id`` follows Binance diff-depth semantics: it is the last
    update id already reflected in the book.
    """

    def __init__(self) -> None:
        self.bids: SortedDict = SortedDict()
        self.asks: SortedDict = SortedDict()
        self.last_update_id: Optional[int] = None

    @property
    def initialized(self) -> bool:
        return self.last_update_id is not None

    @staticmethod
    def _apply_level(side: SortedDict, price: Decimal, qty: Decimal) -> None:
        if qty == 0:
            side.pop(price, None)
        else:
            side[price] = qty

    def _side(self, side: Side) -> SortedDict:
        return self.bids if Side(side) is Side.BID else self.asks

    def initialize(self, snapshot: Snapshot) -> None:
        if self.initialized:
            raise RuntimeError("OrderBookState already initialized; use a fresh instance to resync")

        self.bids.clear()
        self.asks.clear()
        for price, qty in snapshot.bids:
            self._apply_level(self.bids, price, qty)
        for price, qty in snapshot.asks:
            self._apply_level(self.asks, price, qty)

        self.last_update_id = int(snapshot.last_update_id)

    def apply(self, event: DeltaEvent) -> ApplyResult:
        """Apply a depth diff.

        Returns SKIPPED for an event already reflected in the book and APPLIED
        otherwise. Raises SequenceGap (book untouched) when ``U`` jumps past
        ``last_update_id + 1``.
        """
        if self.last_update_id is None:
            raise RuntimeError("OrderBookState not initialized")

        last = self.last_update_id

        # stale event
        if event.u < last:
            return ApplyResult.SKIPPED

        # gap
        if event.U > last + 1:
            raise SequenceGap(expected=last + 1, got_U=event.U, got_u=event.u)

        for price, qty in event.bids:
            self._apply_level(self.bids, price, qty)
        for price, qty in event.asks:
            self._apply_level(self.asks, price, qty)

        self.last_update_id = event.u
        return ApplyResult.APPLIED

    def top_of_book(self, side: Side) -> Optional[PriceLevel]:
        book_side = self._side(side)
        if not book_side:
            return None
        idx = -1 if Side(side) is Side.BID else 0
        price, qty = book_side.peekitem(idx)
        return PriceLevel(price, qty)

    def iter_bids(self) -> Iterator[PriceLevel]:
        for price, qty in reversed(self.bids.items()):
            yield PriceLevel(price, qty)

    def iter_asks(self) -> Iterator[PriceLevel]:
        for price, qty in self.asks.items():
            yield PriceLevel(price, qty)

    def levels(self) -> Tuple[List[PriceLevel], List[PriceLevel]]:
        return list(self.iter_bids()), list(self.iter_asks())

    def top_n(self, n: int) -> Tuple[List[PriceLevel], List[PriceLevel]]:
        if n <= 0:
            return [], []
        return list(islice(self.iter_bids(), n)), list(islice(self.iter_asks(), n))

    def depth(self) -> Tuple[int, int]:
        return len(self.bids), len(self.asks)

    def view(self) -> BookView:
        bids, asks = self.levels()
        return BookView(bids=tuple(bids), asks=tuple(asks), last_update_id=self.last_update_id)

