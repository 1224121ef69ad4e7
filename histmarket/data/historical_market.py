"""
Historical Market - The store's context object.

Owns the raw series and wires its collaborators together:
aggregator, gap filler, integrity checker and persistence codec.
Constructed by the entry point and passed by reference to the poll loop.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import pandas as pd

from ..connectors.backfill_client import BackfillClient, RetryPolicy
from ..core.config import MarketConfig
from ..core.constants import RAW_BUCKET_SECONDS, SECONDS_PER_DAY, FileFormat
from ..core.exceptions import NotFoundError
from ..core.types import IntervalBucket, IntervalLevel, Tick
from .gap_filler import GapFiller, GapFillPolicy
from .integrity_checker import IntegrityChecker, IntegrityReport
from .interval_aggregator import IntervalAggregator, LevelRef, build_levels
from .persistence import PersistenceCodec
from .raw_series import RawSeries

logger = logging.getLogger(__name__)


class HistoricalMarket:
    """
    Historical price record with derived interval levels.

    Consumer interface: ``get_price_at`` and ``get_interval``.
    """

    def __init__(
        self,
        client: Optional[BackfillClient] = None,
        levels: Optional[Sequence[IntervalLevel]] = None,
        policy: GapFillPolicy = GapFillPolicy(),
        retry: RetryPolicy = RetryPolicy(),
        validity_window: Optional[int] = None,
        retention: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize an empty market.

        Args:
            client: Backfill source (required for backfill and gap filling)
            levels: Interval hierarchy, RAW first (default hierarchy if None)
            policy: Gap filling policy
            retry: Retry bounds for source calls
            validity_window: Seconds that must be gap-free for integrity
            retention: Keep at most this many seconds of history
            clock: Current epoch time provider
            sleep: Backoff sleep
        """
        width = levels[0].duration if levels else RAW_BUCKET_SECONDS
        self.raw = RawSeries(width=width)
        self.aggregator = IntervalAggregator(self.raw, levels)
        self.codec = PersistenceCodec(width=width)
        self.integrity_checker = IntegrityChecker(self.aggregator, validity_window=validity_window)
        self.retention = retention
        self.gap_filler: Optional[GapFiller] = None
        if client is not None:
            self.gap_filler = GapFiller(
                self.aggregator, client,
                policy=policy, retry=retry, clock=clock, sleep=sleep
            )

    @classmethod
    def from_config(
        cls,
        config: MarketConfig,
        client: Optional[BackfillClient] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep
    ) -> "HistoricalMarket":
        """Build a market from the loaded configuration."""
        gap_cfg = config.gap_filling
        backfill_cfg = config.backfill
        policy = GapFillPolicy(
            recent_window=int(gap_cfg.recent_window_days * SECONDS_PER_DAY),
            older_method=gap_cfg.older_gap_method,
            fill_unsourced_recent=gap_cfg.fill_unsourced_recent,
            initial_history=int(backfill_cfg.initial_history_days * SECONDS_PER_DAY)
        )
        retry = RetryPolicy(
            max_attempts=backfill_cfg.max_attempts,
            base_delay=backfill_cfg.base_delay_sec,
            max_delay=backfill_cfg.max_delay_sec
        )
        validity = config.integrity.validity_window_days
        return cls(
            client=client,
            levels=build_levels(config.market.intervals),
            policy=policy,
            retry=retry,
            validity_window=None if validity is None else int(validity * SECONDS_PER_DAY),
            retention=config.market.retention_seconds,
            clock=clock,
            sleep=sleep
        )

    @property
    def intervals(self) -> Dict[str, IntervalLevel]:
        """Configured levels by name."""
        return {level.name: level for level in self.aggregator.levels}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def read_from_file(self, path: Union[str, Path], missing_ok: bool = False) -> int:
        """
        Replace the series with the file's content and rebuild the levels.

        Args:
            path: History file
            missing_ok: Treat a missing file as an empty history

        Returns:
            Number of ticks loaded

        Raises:
            NotFoundError: If the file is missing and ``missing_ok`` is False
            FormatError: If the file is corrupt
        """
        try:
            series = self.codec.read_from_file(path)
        except NotFoundError:
            if not missing_ok:
                raise
            logger.warning("History file %s not found, starting empty", path)
            return 0

        self._attach(series)
        self.aggregator.rebuild()
        return len(series)

    def _attach(self, series: RawSeries) -> None:
        self.raw = series
        self.aggregator.raw = series

    def write_to_file(self, path: Union[str, Path], fmt: Optional[FileFormat] = None) -> Path:
        return self.codec.write_to_file(self.raw, path, fmt)

    def disable_csv(self) -> None:
        """Leave legacy CSV mode for the rest of the session."""
        if self.raw.csv_enabled:
            logger.info("Disabling legacy CSV mode")
        self.raw.disable_csv()

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def _filler(self) -> GapFiller:
        if self.gap_filler is None:
            raise ValueError("HistoricalMarket was built without a backfill client")
        return self.gap_filler

    def fulfil_till_now(self, symbol: str) -> int:
        pushed = self._filler().fulfil_till_now(symbol)
        self._apply_retention()
        return pushed

    def fill_gaps(self, symbol: Optional[str] = None) -> int:
        return self._filler().fill_gaps(symbol)

    def fill_older_gaps(self) -> int:
        return self._filler().fill_older_gaps()

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def check_integrity(self) -> IntegrityReport:
        return self.integrity_checker.check()

    def is_integrity_ok(self) -> bool:
        return self.integrity_checker.is_integrity_ok()

    def verify_integrity(self) -> IntegrityReport:
        return self.integrity_checker.verify()

    # ------------------------------------------------------------------
    # Live path
    # ------------------------------------------------------------------

    def push_lowest_and_recalculate_parents(self, tick: Tick) -> List[Optional[IntervalBucket]]:
        """
        Push a live tick and refresh its bucket chain.

        Raises:
            OutOfOrderError: If the tick precedes the retained history
        """
        chain = self.aggregator.push_lowest_and_recalculate_parents(tick)
        self._apply_retention()
        return chain

    def _apply_retention(self) -> None:
        if self.retention is None or self.raw.first_time is None:
            return
        cutoff = self.raw.last_time - self.retention
        if self.raw.first_time < cutoff:
            removed = self.aggregator.trim(cutoff)
            logger.debug("Retention trimmed %d ticks before %d", removed, cutoff)

    # ------------------------------------------------------------------
    # Consumer interface
    # ------------------------------------------------------------------

    def get_price_at(self, time: int) -> Optional[IntervalBucket]:
        """RAW bucket containing ``time``, or None."""
        return self.aggregator.get_interval(time, 0)

    def get_interval(self, time: int, level: LevelRef) -> Optional[IntervalBucket]:
        """Bucket at ``level`` containing ``time``; may be provisional."""
        return self.aggregator.get_interval(time, level)

    def get_bars(self, level: LevelRef) -> pd.DataFrame:
        return self.aggregator.to_frame(level)

    def __len__(self) -> int:
        return len(self.raw)
