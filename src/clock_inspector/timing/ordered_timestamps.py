"""
Ordered timestamp reconstruction.

PES timestamps arrive in decode order; with B-frames that is not display
order. Collecting every PTS and keeping the collection sorted by clock value
gives the true presentation cadence, from which frame intervals can be
measured reliably.

Memory grows with every inserted timestamp for the whole run, which is why
the engine only builds one of these when reordering is requested.
"""

import logging
from dataclasses import dataclass, asdict
from typing import List

from .clock_constants import MAX_PTS_VALUE, pts_ticks_to_ms
from .clock_model import clock_diff

logger = logging.getLogger(__name__)


@dataclass
class OrderedTimestamp:
    """Entry of a reconstructed presentation-order sequence."""
    sequence: int           # decode/arrival order number
    ticks: int
    source_offset: int
    delta_ticks: int = 0    # clock-aware distance from the predecessor

    @property
    def delta_ms(self) -> float:
        return pts_ticks_to_ms(self.delta_ticks)

    def to_dict(self) -> dict:
        result = asdict(self)
        result['delta_ms'] = self.delta_ms
        return result


class OrderedTimestampReconstructor:
    """Insertion-sorted sequence of (sequence, ticks, offset) entries."""

    def __init__(self, modulus: int = MAX_PTS_VALUE):
        self.modulus = modulus
        self._items: List[OrderedTimestamp] = []

    def insert(self, sequence: int, ticks: int, source_offset: int = 0):
        """
        Insert keeping ascending clock order.

        Scans backwards from the newest entry (timestamps are mostly in
        order, so the scan is usually one step) and places the item after
        the first entry whose ticks are <= the new ticks, wrap-aware.
        """
        item = OrderedTimestamp(sequence=sequence, ticks=ticks, source_offset=source_offset)

        for i in range(len(self._items) - 1, -1, -1):
            if clock_diff(self._items[i].ticks, ticks, self.modulus) >= 0:
                self._items.insert(i + 1, item)
                return

        self._items.insert(0, item)

    def drain(self) -> List[OrderedTimestamp]:
        """
        Take the sequence in presentation order.

        Each entry carries the wrap-aware delta from its predecessor
        (0 for the first). The reconstructor is empty afterwards.
        """
        items, self._items = self._items, []

        last = None
        for item in items:
            item.delta_ticks = 0 if last is None else clock_diff(last, item.ticks, self.modulus)
            last = item.ticks

        logger.debug(f"Drained {len(items)} ordered timestamps")
        return items

    def __len__(self) -> int:
        return len(self._items)
