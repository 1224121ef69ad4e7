"""Core types, constants, exceptions and configuration."""

from .types import Tick, IntervalLevel, IntervalBucket, Gap, align_time
from .config import MarketConfig, load_config

__all__ = [
    "Tick",
    "IntervalLevel",
    "IntervalBucket",
    "Gap",
    "align_time",
    "MarketConfig",
    "load_config",
]
