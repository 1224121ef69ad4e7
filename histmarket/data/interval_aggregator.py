"""
Interval Aggregator - Hierarchical OHLC buckets over a raw series.

Each non-RAW level reduces the buckets of its source level:
open = first, close = last, high = max, low = min. A span without
children has no bucket at all (never a zero-valued one).
"""

import logging
from itertools import groupby
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from ..core.constants import DEFAULT_INTERVALS
from ..core.exceptions import NotFoundError
from ..core.types import IntervalBucket, IntervalLevel, Tick
from .raw_series import RawSeries

logger = logging.getLogger(__name__)

LevelRef = Union[int, str, IntervalLevel]


def build_levels(intervals: Sequence[Tuple[str, int]] = DEFAULT_INTERVALS) -> List[IntervalLevel]:
    """
    Build the level descriptor list from (name, seconds) pairs.

    The first entry is RAW; every following level reduces the one before it.
    """
    levels = []
    for idx, (name, seconds) in enumerate(intervals):
        levels.append(IntervalLevel(name=name, duration=int(seconds), source=None if idx == 0 else idx - 1))
    validate_levels(levels)
    return levels


def validate_levels(levels: Sequence[IntervalLevel]) -> None:
    if not levels or not levels[0].is_raw:
        raise ValueError("The first level must be RAW (no source)")

    for idx, level in enumerate(levels[1:], start=1):
        if level.source is None or not 0 <= level.source < idx:
            raise ValueError(f"Level {level.name} must reduce an earlier level")
        source = levels[level.source]
        if level.duration <= source.duration or level.duration % source.duration != 0:
            raise ValueError(
                f"Level {level.name} ({level.duration}s) is not a multiple of "
                f"{source.name} ({source.duration}s)"
            )


def reduce_buckets(
    level: IntervalLevel,
    start_time: int,
    children: Sequence[IntervalBucket],
    expected_count: int
) -> Optional[IntervalBucket]:
    """
    Reduce time-ordered children into one bucket.

    Returns:
        The bucket, or None when there are no children
    """
    if not children:
        return None

    return IntervalBucket(
        level=level.name,
        start_time=start_time,
        duration=level.duration,
        open=children[0].open,
        high=max(c.high for c in children),
        low=min(c.low for c in children),
        close=children[-1].close,
        tick_count=sum(c.tick_count for c in children),
        expected_count=expected_count,
        interpolated_count=sum(c.interpolated_count for c in children)
    )


class IntervalAggregator:
    """
    Maintains one bucket cache per derived level.

    The caches are recomputable from the raw series at any time; the raw
    series stays the source of truth.
    """

    def __init__(self, raw: RawSeries, levels: Optional[Sequence[IntervalLevel]] = None):
        """
        Initialize aggregator.

        Args:
            raw: Raw series to aggregate
            levels: Level descriptors, RAW first (default hierarchy if None)
        """
        if levels is None:
            intervals = [(name, seconds) for name, seconds in DEFAULT_INTERVALS]
            intervals[0] = (intervals[0][0], raw.width)
            levels = build_levels(intervals)
        else:
            levels = list(levels)
            validate_levels(levels)

        if levels[0].duration != raw.width:
            raise ValueError(
                f"RAW level duration ({levels[0].duration}s) differs from series width ({raw.width}s)"
            )

        self.raw = raw
        self.levels: List[IntervalLevel] = levels
        self._index: Dict[str, int] = {level.name: i for i, level in enumerate(levels)}
        self._buckets: List[Dict[int, IntervalBucket]] = [{} for _ in levels]

    # ------------------------------------------------------------------
    # Level lookup
    # ------------------------------------------------------------------

    def level_index(self, level: LevelRef) -> int:
        if isinstance(level, IntervalLevel):
            level = level.name
        if isinstance(level, str):
            if level not in self._index:
                raise NotFoundError("Unknown interval level", level=level)
            return self._index[level]
        if not 0 <= level < len(self.levels):
            raise NotFoundError("Unknown interval level", level=level)
        return level

    def level(self, level: LevelRef) -> IntervalLevel:
        return self.levels[self.level_index(level)]

    def expected_count(self, index: int) -> int:
        return self.levels[index].duration // self.raw.width

    # ------------------------------------------------------------------
    # Incremental path
    # ------------------------------------------------------------------

    def push_lowest_and_recalculate_parents(self, tick: Tick) -> List[Optional[IntervalBucket]]:
        """
        Push a tick into the raw series and refresh its bucket chain.

        Only the bucket containing ``tick.time`` is recomputed at each level,
        reading at most duration / source duration children per level.

        Returns:
            The refreshed bucket per level, RAW first

        Raises:
            OutOfOrderError: If the raw series rejects the tick
        """
        self.raw.push(tick)
        return self.recalculate_parents(tick.time)

    def recalculate_parents(self, time: int) -> List[Optional[IntervalBucket]]:
        """Recompute the bucket containing ``time`` at every derived level."""
        chain: List[Optional[IntervalBucket]] = [self.get_interval(time, 0)]
        for idx in range(1, len(self.levels)):
            chain.append(self._recalculate(idx, self.levels[idx].align(time)))
        return chain

    def _children(self, idx: int, start: int) -> List[IntervalBucket]:
        level = self.levels[idx]
        source = self.levels[level.source]
        end = start + level.duration

        if source.is_raw:
            return [IntervalBucket.from_tick(t, source) for t in self.raw.range(start, end)]

        cache = self._buckets[level.source]
        return [cache[t] for t in range(start, end, source.duration) if t in cache]

    def _recalculate(self, idx: int, start: int) -> Optional[IntervalBucket]:
        bucket = reduce_buckets(self.levels[idx], start, self._children(idx, start), self.expected_count(idx))
        cache = self._buckets[idx]
        if bucket is None:
            cache.pop(start, None)
        else:
            cache[start] = bucket
        return bucket

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------

    def recompute_all(self) -> List[Dict[int, IntervalBucket]]:
        """
        Fresh batch recomputation of every derived level from the raw series.

        Does not touch the caches.
        """
        result: List[Dict[int, IntervalBucket]] = [{} for _ in self.levels]
        raw_level = self.levels[0]

        for idx in range(1, len(self.levels)):
            level = self.levels[idx]
            if self.levels[level.source].is_raw:
                children: Iterable[IntervalBucket] = (IntervalBucket.from_tick(t, raw_level) for t in self.raw)
            else:
                children = result[level.source].values()

            expected = self.expected_count(idx)
            for start, group in groupby(children, key=lambda b: level.align(b.start_time)):
                bucket = reduce_buckets(level, start, list(group), expected)
                result[idx][start] = bucket

        return result

    def rebuild(self) -> None:
        """Replace the caches with a full recomputation."""
        self._buckets = self.recompute_all()
        logger.debug(
            "Rebuilt %d derived levels over %d raw ticks",
            len(self.levels) - 1, len(self.raw)
        )

    def trim(self, before: int) -> int:
        """
        Trim the raw series and drop derived buckets wholly before the floor.

        Buckets straddling the floor are recomputed from what remains.

        Returns:
            Number of raw ticks removed
        """
        removed = self.raw.trim(before)
        floor = self.raw.min_retained_time
        if floor is None:
            return removed

        for idx in range(1, len(self.levels)):
            level = self.levels[idx]
            cache = self._buckets[idx]
            for start in [s for s, bucket in cache.items() if bucket.end_time <= floor]:
                del cache[start]
            straddling = level.align(floor)
            if straddling < floor:
                self._recalculate(idx, straddling)

        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_interval(self, time: int, level: LevelRef) -> Optional[IntervalBucket]:
        """
        Bucket containing ``time`` at ``level``.

        Incomplete buckets are returned with ``provisional`` set; spans
        without data return None.
        """
        idx = self.level_index(level)
        if idx == 0:
            tick = self.raw.get_at(time)
            return IntervalBucket.from_tick(tick, self.levels[0]) if tick else None
        return self._buckets[idx].get(self.levels[idx].align(time))

    def buckets(self, level: LevelRef) -> List[IntervalBucket]:
        """Cached buckets of a derived level in time order."""
        idx = self.level_index(level)
        if idx == 0:
            return [IntervalBucket.from_tick(t, self.levels[0]) for t in self.raw]
        cache = self._buckets[idx]
        return [cache[start] for start in sorted(cache)]

    def cached(self) -> List[Dict[int, IntervalBucket]]:
        """The live caches, RAW entry empty."""
        return self._buckets

    def to_frame(self, level: LevelRef) -> pd.DataFrame:
        """
        Export a level as a DataFrame.

        Returns:
            DataFrame with columns: timestamp, open, high, low, close,
            tick_count, provisional
        """
        buckets = self.buckets(level)
        return pd.DataFrame({
            'timestamp': pd.to_datetime([b.start_time for b in buckets], unit='s', utc=True),
            'open': [float(b.open) for b in buckets],
            'high': [float(b.high) for b in buckets],
            'low': [float(b.low) for b in buckets],
            'close': [float(b.close) for b in buckets],
            'tick_count': [b.tick_count for b in buckets],
            'provisional': [b.provisional for b in buckets]
        })
