"""
Data Layer - Historical price record and its derived intervals.

This module provides the complete data infrastructure of the store:
- RAW tick storage with overwrite semantics
- Hierarchical interval buckets with incremental updates
- Gap detection and repair (source-backed and interpolated)
- Integrity verification
- Binary and legacy CSV persistence

Main Components:
    HistoricalMarket: Context object wiring all components together
    RawSeries: Time-ordered RAW tick store
    IntervalAggregator: Derived interval levels
    GapFiller: Backfill and gap repair
    IntegrityChecker: Read-only validation
    PersistenceCodec: File reader/writer
"""

from .raw_series import RawSeries
from .interval_aggregator import IntervalAggregator, build_levels
from .gap_filler import GapFiller, GapFillPolicy, detect_gaps
from .integrity_checker import IntegrityChecker, IntegrityReport
from .persistence import PersistenceCodec
from .historical_market import HistoricalMarket

__all__ = [
    "HistoricalMarket",
    "RawSeries",
    "IntervalAggregator",
    "build_levels",
    "GapFiller",
    "GapFillPolicy",
    "detect_gaps",
    "IntegrityChecker",
    "IntegrityReport",
    "PersistenceCodec",
]
