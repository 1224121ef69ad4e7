"""
Raw Series - Time-ordered store of RAW ticks.

Keys are tick times rounded down to the RAW bucket width. Lookups are
dict based, ordered access goes through a sorted key list.
"""

from bisect import bisect_left, insort
from typing import Dict, Iterator, List, Optional

import pandas as pd

from ..core.constants import RAW_BUCKET_SECONDS
from ..core.exceptions import OutOfOrderError
from ..core.types import Tick, align_time


def format_csv_row(tick: Tick) -> str:
    """Legacy CSV row for a tick: ``time,price,interpolated``."""
    return f"{tick.time},{tick.price},{int(tick.interpolated)}"


class TickRange:
    """
    Lazy view over the ticks of a series within [start, end).

    Every iteration re-reads the series, so the view can be iterated
    repeatedly and reflects later pushes.
    """

    def __init__(self, series: "RawSeries", start: Optional[int], end: Optional[int]):
        self.series = series
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[Tick]:
        keys = self.series._keys
        lo = 0 if self.start is None else bisect_left(keys, self.start)
        hi = len(keys) if self.end is None else bisect_left(keys, self.end)
        for key in keys[lo:hi]:
            yield self.series._ticks[key]


class RawSeries:
    """
    Store of RAW ticks keyed by bucket-aligned time.

    Invariants:
    - keys strictly increasing when iterated, no duplicates
    - every key is a multiple of the RAW width
    - a duplicate-slot push overwrites (later push wins)
    """

    def __init__(self, width: int = RAW_BUCKET_SECONDS, csv_enabled: bool = False):
        """
        Initialize raw series.

        Args:
            width: RAW bucket width in seconds
            csv_enabled: Keep a legacy CSV row mirror alongside the ticks
        """
        if width <= 0:
            raise ValueError(f"RAW width must be positive, got {width}")

        self.width = width
        self._ticks: Dict[int, Tick] = {}
        self._keys: List[int] = []
        self._floor: Optional[int] = None
        self._csv_rows: Optional[Dict[int, str]] = {} if csv_enabled else None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def push(self, tick: Tick) -> int:
        """
        Insert or overwrite the slot containing ``tick.time``.

        Returns:
            The aligned key the tick was stored under

        Raises:
            OutOfOrderError: If the slot precedes the minimum retained time
        """
        key = self.align(tick.time)
        floor = self.min_retained_time

        if floor is not None and key < floor:
            raise OutOfOrderError(
                "Tick precedes the earliest retained time",
                time=tick.time,
                min_retained=floor
            )

        if key not in self._ticks:
            if not self._keys or key > self._keys[-1]:
                self._keys.append(key)
            else:
                insort(self._keys, key)

        self._ticks[key] = tick

        if self._csv_rows is not None:
            self._csv_rows[key] = format_csv_row(tick)

        return key

    def trim(self, before: int) -> int:
        """
        Drop every tick whose slot starts before ``before``.

        The aligned cut becomes the new retention floor.

        Returns:
            Number of ticks removed
        """
        cut = self.align(before)
        idx = bisect_left(self._keys, cut)

        removed = self._keys[:idx]
        for key in removed:
            del self._ticks[key]
            if self._csv_rows is not None:
                self._csv_rows.pop(key, None)

        self._keys = self._keys[idx:]
        self._floor = cut if self._floor is None else max(self._floor, cut)

        return len(removed)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def align(self, time: int) -> int:
        return align_time(time, self.width)

    def get_at(self, time: int) -> Optional[Tick]:
        """Tick whose bucket contains ``time``, or None."""
        return self._ticks.get(self.align(time))

    def range(self, start: Optional[int] = None, end: Optional[int] = None) -> TickRange:
        """Lazy, restartable sequence of ticks in [start, end) ordered by time."""
        return TickRange(self, start, end)

    def last_before(self, time: int) -> Optional[Tick]:
        """Latest tick stored in a slot that starts before ``time``."""
        idx = bisect_left(self._keys, time)
        return self._ticks[self._keys[idx - 1]] if idx else None

    def keys(self) -> List[int]:
        """Copy of the sorted slot keys."""
        return list(self._keys)

    def items(self) -> Iterator:
        for key in self._keys:
            yield key, self._ticks[key]

    @property
    def first_time(self) -> Optional[int]:
        return self._keys[0] if self._keys else None

    @property
    def last_time(self) -> Optional[int]:
        return self._keys[-1] if self._keys else None

    @property
    def last_tick(self) -> Optional[Tick]:
        return self._ticks[self._keys[-1]] if self._keys else None

    @property
    def min_retained_time(self) -> Optional[int]:
        """Earliest slot a push may target."""
        if self._keys:
            return self._keys[0]
        return self._floor

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, time: int) -> bool:
        return self.align(time) in self._ticks

    def __iter__(self) -> Iterator[Tick]:
        for key in self._keys:
            yield self._ticks[key]

    def __eq__(self, other) -> bool:
        if not isinstance(other, RawSeries):
            return NotImplemented
        return self.width == other.width and list(self) == list(other)

    # ------------------------------------------------------------------
    # Legacy CSV mode
    # ------------------------------------------------------------------

    @property
    def csv_enabled(self) -> bool:
        return self._csv_rows is not None

    def csv_rows(self) -> Iterator[str]:
        """Legacy CSV rows in time order (only while CSV mode is on)."""
        if self._csv_rows is None:
            for tick in self:
                yield format_csv_row(tick)
            return
        for key in self._keys:
            yield self._csv_rows[key]

    def disable_csv(self) -> None:
        """Drop the CSV row mirror. Not reversible."""
        self._csv_rows = None

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_frame(self, start: Optional[int] = None, end: Optional[int] = None) -> pd.DataFrame:
        """
        Export ticks as a DataFrame.

        Returns:
            DataFrame with columns: time, timestamp, price, interpolated
        """
        ticks = list(self.range(start, end))
        return pd.DataFrame({
            'time': [t.time for t in ticks],
            'timestamp': pd.to_datetime([t.time for t in ticks], unit='s', utc=True),
            'price': [float(t.price) for t in ticks],
            'interpolated': [t.interpolated for t in ticks]
        })
