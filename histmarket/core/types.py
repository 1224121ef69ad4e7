"""Core data types for the historical market store.

This module defines the fundamental data structures used throughout the
store using dataclasses. All types follow strict validation rules:
- Decimal for all prices (never float)
- Integer epoch seconds for all tick and bucket times
- Validation in __post_init__ where needed
- Immutable types are frozen
"""

import numbers
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from .constants import MAX_PRICE_DIGITS, MIN_PRICE_EXPONENT, MAX_PRICE_EXPONENT
from .exceptions import DataValidationError, InvalidBarError


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def align_time(time: int, width: int) -> int:
    """Round ``time`` down to a multiple of ``width``."""
    return time - time % width


# ============================================================================
# Market Data Types
# ============================================================================

@dataclass(frozen=True)
class Tick:
    """
    A single timestamped price observation.

    Attributes:
        time: Observation time in epoch seconds
        price: Observed price
        interpolated: True when synthesized by a gap filler, not observed
    """
    time: int
    price: Decimal
    interpolated: bool = False

    def __post_init__(self):
        """Validate and normalize tick fields."""
        if isinstance(self.time, bool) or not isinstance(self.time, numbers.Integral):
            raise DataValidationError(
                f"Tick time must be an integer epoch, got {self.time!r}",
                time=self.time
            )
        object.__setattr__(self, 'time', int(self.time))

        try:
            price = _to_decimal(self.price)
        except (InvalidOperation, ValueError, TypeError):
            raise DataValidationError(
                f"Tick price is not a number: {self.price!r}",
                time=self.time
            )

        if not price.is_finite() or price <= 0:
            raise DataValidationError(
                f"Tick price must be finite and positive, got {price}",
                time=self.time
            )

        _, digits, exponent = price.as_tuple()
        if len(digits) > MAX_PRICE_DIGITS or not MIN_PRICE_EXPONENT <= exponent <= MAX_PRICE_EXPONENT:
            raise DataValidationError(
                f"Tick price {price} exceeds the stored precision",
                time=self.time
            )

        object.__setattr__(self, 'price', price)
        object.__setattr__(self, 'interpolated', bool(self.interpolated))


@dataclass(frozen=True)
class IntervalLevel:
    """
    Descriptor of one granularity in the aggregation hierarchy.

    Attributes:
        name: Level name (e.g., "MIN5")
        duration: Bucket width in seconds
        source: Index of the level this one reduces from (None for RAW)
    """
    name: str
    duration: int
    source: Optional[int] = None

    @property
    def is_raw(self) -> bool:
        return self.source is None

    def align(self, time: int) -> int:
        """Start time of the bucket containing ``time``."""
        return align_time(time, self.duration)


@dataclass(frozen=True)
class IntervalBucket:
    """
    OHLC summary of a fixed time span at one level.

    A bucket is provisional while some RAW slots of its span are still
    missing. Validates OHLC integrity on creation.
    """
    level: str
    start_time: int
    duration: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    tick_count: int = 1
    expected_count: int = 1
    interpolated_count: int = 0

    def __post_init__(self):
        """Validate bucket integrity."""
        if self.high < max(self.open, self.close):
            raise InvalidBarError(
                f"Invalid bucket: high ({self.high}) < max(open, close)",
                level=self.level,
                start_time=self.start_time
            )

        if self.low > min(self.open, self.close):
            raise InvalidBarError(
                f"Invalid bucket: low ({self.low}) > min(open, close)",
                level=self.level,
                start_time=self.start_time
            )

    @classmethod
    def from_tick(cls, tick: Tick, level: IntervalLevel) -> "IntervalBucket":
        """Single-tick bucket at the RAW level."""
        return cls(
            level=level.name,
            start_time=level.align(tick.time),
            duration=level.duration,
            open=tick.price,
            high=tick.price,
            low=tick.price,
            close=tick.price,
            tick_count=1,
            expected_count=1,
            interpolated_count=1 if tick.interpolated else 0
        )

    @property
    def end_time(self) -> int:
        return self.start_time + self.duration

    @property
    def provisional(self) -> bool:
        """True while the bucket's span is not fully populated."""
        return self.tick_count < self.expected_count

    @property
    def is_interpolated(self) -> bool:
        """True when any underlying tick was synthesized."""
        return self.interpolated_count > 0

    @property
    def price(self) -> Decimal:
        """Latest price in the bucket (its close)."""
        return self.close


@dataclass(frozen=True)
class Gap:
    """Half-open range [start, end) of missing RAW slots."""
    start: int
    end: int
    width: int

    @property
    def slots(self) -> int:
        """Number of missing RAW buckets."""
        return (self.end - self.start) // self.width

    def slot_times(self):
        return range(self.start, self.end, self.width)

    def clip(self, start: Optional[int] = None, end: Optional[int] = None) -> Optional["Gap"]:
        """Intersection with [start, end), re-aligned to the RAW width."""
        lo = self.start if start is None else max(self.start, align_time(start + self.width - 1, self.width))
        hi = self.end if end is None else min(self.end, align_time(end + self.width - 1, self.width))
        if lo >= hi:
            return None
        return Gap(start=lo, end=hi, width=self.width)
