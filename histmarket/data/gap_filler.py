"""
Gap Filler - Detects and repairs missing RAW buckets.

Two repair strategies:
- Recent gaps (inside the recent window) are refetched from the source.
- Older gaps are interpolated locally; synthesized ticks are marked.

Also performs the startup backfill from the last stored slot up to now.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional

import numpy as np

from ..connectors.backfill_client import BackfillClient, RetryPolicy, call_with_retry
from ..core.constants import (
    RECENT_GAP_WINDOW_DAYS, INITIAL_HISTORY_DAYS, DEFAULT_FILL_METHOD,
    SECONDS_PER_DAY, MAX_PRICE_DIGITS, FillMethod,
)
from ..core.exceptions import OutOfOrderError
from ..core.types import Gap, Tick
from .interval_aggregator import IntervalAggregator
from .raw_series import RawSeries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GapFillPolicy:
    """
    Where the recent/older boundary lies and how older gaps are filled.

    Attributes:
        recent_window: Seconds before now that are refetched from the source
        older_method: Interpolation for gaps before the recent window
        fill_unsourced_recent: Carry forward recent slots the source lacks
        initial_history: Seconds of history fetched for an empty series
    """
    recent_window: int = int(RECENT_GAP_WINDOW_DAYS * SECONDS_PER_DAY)
    older_method: FillMethod = DEFAULT_FILL_METHOD
    fill_unsourced_recent: bool = True
    initial_history: int = int(INITIAL_HISTORY_DAYS * SECONDS_PER_DAY)


def detect_gaps(raw: RawSeries, start: Optional[int] = None, end: Optional[int] = None) -> List[Gap]:
    """
    Find every run of missing slots between stored keys.

    Args:
        raw: Series to scan
        start: Clip gaps to slots at or after this time
        end: Clip gaps to slots before this time

    Returns:
        Gaps ordered by time, each clipped to [start, end)
    """
    keys = np.fromiter(raw.keys(), dtype=np.int64, count=len(raw))
    if len(keys) < 2:
        return []

    width = raw.width
    gaps = []
    for i in np.nonzero(np.diff(keys) > width)[0]:
        gap = Gap(start=int(keys[i]) + width, end=int(keys[i + 1]), width=width)
        clipped = gap.clip(start, end)
        if clipped is not None:
            gaps.append(clipped)

    return gaps


def interpolate(before: Tick, after: Optional[Tick], gap: Gap, method: FillMethod,
                full_gap: Optional[Gap] = None) -> List[Tick]:
    """
    Synthesize ticks for every slot of ``gap``.

    Args:
        before: Last observed tick before the gap
        after: First tick after the (unclipped) gap; required for LINEAR
        gap: Slots to fill
        method: Interpolation method
        full_gap: The unclipped gap ``gap`` was cut from (LINEAR spacing)

    Returns:
        Interpolated ticks, none outside [min, max] of the bounding prices
    """
    if method == FillMethod.CARRY_FORWARD or after is None:
        return [Tick(time=t, price=before.price, interpolated=True) for t in gap.slot_times()]

    full_gap = full_gap or gap
    steps = Decimal(full_gap.slots + 1)
    delta = after.price - before.price
    exponent = min(before.price.as_tuple().exponent, after.price.as_tuple().exponent)

    ticks = []
    for t in gap.slot_times():
        k = Decimal((t - full_gap.start) // gap.width + 1)
        value = before.price + delta * k / steps
        # Never finer than the stored precision allows
        quantum = Decimal(1).scaleb(max(exponent, value.adjusted() - MAX_PRICE_DIGITS + 1))
        ticks.append(Tick(time=t, price=value.quantize(quantum), interpolated=True))
    return ticks


class GapFiller:
    """
    Repairs the raw series through the aggregator.

    All inserts go through ``push_lowest_and_recalculate_parents`` so the
    derived levels stay consistent.
    """

    def __init__(
        self,
        aggregator: IntervalAggregator,
        client: BackfillClient,
        policy: GapFillPolicy = GapFillPolicy(),
        retry: RetryPolicy = RetryPolicy(),
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        symbol: Optional[str] = None
    ):
        """
        Initialize gap filler.

        Args:
            aggregator: Aggregator wrapping the raw series
            client: Backfill source
            policy: Recent window and interpolation policy
            retry: Retry bounds for source calls
            clock: Returns the current epoch time (injectable for tests)
            sleep: Backoff sleep (injectable for tests)
            symbol: Symbol to backfill; set by fulfil_till_now if omitted
        """
        self.aggregator = aggregator
        self.client = client
        self.policy = policy
        self.retry = retry
        self.clock = clock
        self.sleep = sleep
        self.symbol = symbol

    @property
    def raw(self) -> RawSeries:
        return self.aggregator.raw

    def now(self) -> int:
        return int(self.clock())

    def recent_window_start(self) -> int:
        return self.now() - self.policy.recent_window

    def detect_gaps(self, start: Optional[int] = None, end: Optional[int] = None) -> List[Gap]:
        return detect_gaps(self.raw, start, end)

    # ------------------------------------------------------------------
    # Source access
    # ------------------------------------------------------------------

    def _require_symbol(self, symbol: Optional[str]) -> str:
        symbol = symbol or self.symbol
        if not symbol:
            raise ValueError("No symbol to backfill; call fulfil_till_now(symbol) first")
        return symbol

    def _fetch_ticker(self, symbol: str) -> Optional[Tick]:
        return call_with_retry(
            self.client.get_ticker, symbol,
            policy=self.retry,
            sleep=self.sleep,
            description=f"get_ticker({symbol})"
        )

    def _fetch_historical(self, symbol: str, start: int, end: int) -> List[Tick]:
        return call_with_retry(
            lambda: list(self.client.get_historical(symbol, start, end)),
            policy=self.retry,
            sleep=self.sleep,
            description=f"get_historical({symbol}, {start}, {end})"
        )

    def _push(self, tick: Tick) -> bool:
        try:
            self.aggregator.push_lowest_and_recalculate_parents(tick)
            return True
        except OutOfOrderError as e:
            logger.warning("Skipping backfilled tick: %s", e)
            return False

    # ------------------------------------------------------------------
    # Repair operations
    # ------------------------------------------------------------------

    def fulfil_till_now(self, symbol: str) -> int:
        """
        Backfill from the last stored slot up to now, then push the ticker.

        Returns:
            Number of ticks pushed

        Raises:
            SourceUnavailableError: If the source keeps failing
        """
        self.symbol = symbol
        now = self.now()
        last = self.raw.last_time

        if last is None:
            start = self.raw.align(now - self.policy.initial_history)
        else:
            start = last + self.raw.width

        ticker = self._fetch_ticker(symbol)
        history = self._fetch_historical(symbol, start, now) if start < now else []

        pushed = sum(1 for tick in history if self._push(tick))
        if ticker is not None and self._push(ticker):
            pushed += 1

        logger.info(
            "Backfilled %s from %d till %d: %d ticks pushed (%d raw ticks total)",
            symbol, start, now, pushed, len(self.raw)
        )
        return pushed

    def fill_gaps(self, symbol: Optional[str] = None) -> int:
        """
        Refetch every gap inside the recent window from the source.

        Slots the source cannot supply are carried forward (marked
        interpolated) when ``fill_unsourced_recent`` is set.

        Returns:
            Number of slots filled
        """
        symbol = self._require_symbol(symbol)
        gaps = self.detect_gaps(start=self.recent_window_start())
        filled = 0

        for gap in gaps:
            for tick in self._fetch_historical(symbol, gap.start, gap.end):
                if gap.start <= self.raw.align(tick.time) < gap.end and self._push(tick):
                    filled += 1

            missing = [t for t in gap.slot_times() if t not in self.raw]
            if missing and self.policy.fill_unsourced_recent:
                logger.warning(
                    "Source has no data for %d recent slots in [%d, %d); carrying forward",
                    len(missing), gap.start, gap.end
                )
                for slot in missing:
                    # The slot before may sit in the older, not yet filled part of the gap
                    before = self.raw.last_before(slot)
                    if self._push(Tick(time=slot, price=before.price, interpolated=True)):
                        filled += 1

        if gaps:
            logger.info("Filled %d slots across %d recent gaps", filled, len(gaps))
        return filled

    def fill_older_gaps(self) -> int:
        """
        Interpolate every gap before the recent window.

        Returns:
            Number of slots filled
        """
        window_start = self.recent_window_start()
        filled = 0
        gap_count = 0

        for full_gap in self.detect_gaps():
            gap = full_gap.clip(end=window_start)
            if gap is None:
                continue
            gap_count += 1
            before = self.raw.get_at(full_gap.start - self.raw.width)
            after = self.raw.get_at(full_gap.end)
            for tick in interpolate(before, after, gap, self.policy.older_method, full_gap):
                if self._push(tick):
                    filled += 1

        if gap_count:
            logger.info(
                "Interpolated %d slots across %d older gaps (%s)",
                filled, gap_count, self.policy.older_method.value
            )
        return filled
