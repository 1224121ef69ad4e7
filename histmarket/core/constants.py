"""System-wide constants and enumerations for the historical market store.

This module defines all constants, enumerations, and default values used
throughout the store. These values provide sensible defaults and
standardize string values across the codebase.
"""

from enum import Enum


# ============================================================================
# Enumerations
# ============================================================================

class FillMethod(str, Enum):
    """Enumeration of interpolation methods for older gaps.

    Defines how missing RAW slots outside the recent window are synthesized:
    - CARRY_FORWARD: Repeat the last observed price before the gap
    - LINEAR: Straight line between the prices bounding the gap
    """
    CARRY_FORWARD = "carry_forward"
    LINEAR = "linear"


class FileFormat(str, Enum):
    """Enumeration of persisted file formats.

    - BINARY: Packed fixed-size records (fast, compact)
    - CSV: Legacy human-readable delimited text
    """
    BINARY = "binary"
    CSV = "csv"


class Environment(str, Enum):
    """Enumeration of runtime environments.

    Defines the operational environment:
    - DEV: Development environment for testing and debugging
    - PAPER: Paper trading against a replayed source
    - LIVE: Live market source
    """
    DEV = "dev"
    PAPER = "paper"
    LIVE = "live"


# ============================================================================
# Interval Hierarchy Defaults
# ============================================================================

RAW_BUCKET_SECONDS: int = 60
"""Width of the finest (RAW) bucket in seconds (1 minute).

Every stored tick is keyed by its time rounded down to a multiple of this
width.
"""

DEFAULT_INTERVALS = (
    ("RAW", 60),
    ("MIN5", 300),
    ("MIN15", 900),
    ("HOUR1", 3600),
    ("HOUR4", 14400),
    ("DAY1", 86400),
)
"""Default interval hierarchy as (name, duration seconds), finest first.

Each level reduces the level directly before it, so every duration must be
an exact multiple of the previous one.
"""

DEFAULT_CONSUMER_LEVEL: str = "MIN5"
"""Level handed to the price consumer on every poll."""


# ============================================================================
# Gap Filling Defaults
# ============================================================================

RECENT_GAP_WINDOW_DAYS: float = 14
"""Gaps newer than this are refetched from the source (2 weeks).

Older gaps are interpolated locally.
"""

DEFAULT_FILL_METHOD: FillMethod = FillMethod.CARRY_FORWARD


# ============================================================================
# Backfill / Retry Constants
# ============================================================================

BACKFILL_MAX_ATTEMPTS: int = 5
"""Maximum number of attempts for a single backfill request.

After this many failures the request raises SourceUnavailableError.
"""

BACKFILL_BASE_DELAY_SECONDS: float = 1.0
"""Delay before the first retry; doubled on every further attempt."""

BACKFILL_MAX_DELAY_SECONDS: float = 30.0
"""Upper bound for a single retry delay."""

INITIAL_HISTORY_DAYS: float = 14
"""History requested from the source when the store starts empty."""


# ============================================================================
# Polling Constants
# ============================================================================

POLL_INTERVAL_SECONDS: float = 10.0
"""Delay between two ticker polls in the live loop."""

SAVE_INTERVAL_SECONDS: float = 300.0
"""Interval between automatic saves of the series during the live loop."""


# ============================================================================
# Persistence Constants
# ============================================================================

BINARY_MAGIC: bytes = b"HMDAT001"
"""Header identifying the binary tick file format."""

CSV_COLUMNS = ("time", "price", "interpolated")

FLAG_INTERPOLATED: int = 0x01

MAX_PRICE_DIGITS: int = 18
"""Significant digits of a price; any 18-digit mantissa fits an int64 record."""

MIN_PRICE_EXPONENT: int = -128
MAX_PRICE_EXPONENT: int = 127


# ============================================================================
# Paths
# ============================================================================

DEFAULT_CONFIG_FILE: str = "config/config.yaml"
DEFAULT_LOG_FILE: str = "data/logs/histmarket.log"

SECONDS_PER_DAY: int = 86400
