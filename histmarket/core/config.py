"""Configuration loading for the historical market store.

Reads the YAML configuration file and converts it into validated
dataclasses. Every key is optional; defaults come from ``constants``.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .constants import (
    DEFAULT_INTERVALS, DEFAULT_CONSUMER_LEVEL, DEFAULT_FILL_METHOD,
    RECENT_GAP_WINDOW_DAYS, INITIAL_HISTORY_DAYS,
    BACKFILL_MAX_ATTEMPTS, BACKFILL_BASE_DELAY_SECONDS, BACKFILL_MAX_DELAY_SECONDS,
    POLL_INTERVAL_SECONDS, SAVE_INTERVAL_SECONDS, DEFAULT_LOG_FILE,
    SECONDS_PER_DAY, Environment, FillMethod,
)
from .exceptions import InvalidConfigError, MissingConfigError


def _days_to_seconds(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(float(value) * SECONDS_PER_DAY)


@dataclass
class MarketSettings:
    """Interval hierarchy and retention."""
    intervals: List[Tuple[str, int]] = field(default_factory=lambda: list(DEFAULT_INTERVALS))
    retention_days: Optional[float] = None

    @property
    def raw_bucket_seconds(self) -> int:
        return self.intervals[0][1]

    @property
    def retention_seconds(self) -> Optional[int]:
        return _days_to_seconds(self.retention_days)


@dataclass
class GapFillingSettings:
    recent_window_days: float = RECENT_GAP_WINDOW_DAYS
    older_gap_method: FillMethod = DEFAULT_FILL_METHOD
    fill_unsourced_recent: bool = True


@dataclass
class BackfillSettings:
    max_attempts: int = BACKFILL_MAX_ATTEMPTS
    base_delay_sec: float = BACKFILL_BASE_DELAY_SECONDS
    max_delay_sec: float = BACKFILL_MAX_DELAY_SECONDS
    initial_history_days: float = INITIAL_HISTORY_DAYS


@dataclass
class IntegritySettings:
    # None checks the whole series for gaps
    validity_window_days: Optional[float] = None


@dataclass
class PollingSettings:
    interval_sec: float = POLL_INTERVAL_SECONDS
    consumer_level: str = DEFAULT_CONSUMER_LEVEL
    save_interval_sec: float = SAVE_INTERVAL_SECONDS


@dataclass
class MonitoringSettings:
    log_level: str = "INFO"
    log_file: Optional[str] = DEFAULT_LOG_FILE


@dataclass
class MarketConfig:
    """
    Complete configuration for the store and its poll loop.

    Attributes:
        environment: dev / paper / live
        market: Interval hierarchy and retention
        gap_filling: Recent window and interpolation policy
        backfill: Retry bounds and initial history depth
        integrity: Gap validity window
        polling: Poll loop timing and consumer level
        monitoring: Logging options
        traders: Per symbol/strategy trader settings
    """
    environment: Environment = Environment.DEV
    market: MarketSettings = field(default_factory=MarketSettings)
    gap_filling: GapFillingSettings = field(default_factory=GapFillingSettings)
    backfill: BackfillSettings = field(default_factory=BackfillSettings)
    integrity: IntegritySettings = field(default_factory=IntegritySettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    traders: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MarketConfig":
        """Build a validated config from a parsed YAML mapping."""
        data = data or {}
        if not isinstance(data, dict):
            raise InvalidConfigError("Configuration root must be a mapping")

        try:
            environment = Environment(data.get('environment', Environment.DEV.value))
        except ValueError:
            raise InvalidConfigError(
                "Unknown environment",
                environment=data.get('environment')
            )

        market_cfg = data.get('market', {}) or {}
        intervals = market_cfg.get('intervals')
        if intervals is None:
            intervals = list(DEFAULT_INTERVALS)
        else:
            intervals = [_parse_interval(entry) for entry in intervals]
        _validate_intervals(intervals)

        market = MarketSettings(
            intervals=intervals,
            retention_days=_optional_positive(market_cfg, 'retention_days')
        )

        gap_cfg = data.get('gap_filling', {}) or {}
        try:
            method = FillMethod(gap_cfg.get('older_gap_method', DEFAULT_FILL_METHOD.value))
        except ValueError:
            raise InvalidConfigError(
                "Unknown older_gap_method",
                value=gap_cfg.get('older_gap_method')
            )
        gap_filling = GapFillingSettings(
            recent_window_days=_non_negative(gap_cfg, 'recent_window_days', RECENT_GAP_WINDOW_DAYS),
            older_gap_method=method,
            fill_unsourced_recent=bool(gap_cfg.get('fill_unsourced_recent', True))
        )

        backfill_cfg = data.get('backfill', {}) or {}
        max_attempts = int(backfill_cfg.get('max_attempts', BACKFILL_MAX_ATTEMPTS))
        if max_attempts < 1:
            raise InvalidConfigError("backfill.max_attempts must be >= 1", value=max_attempts)
        backfill = BackfillSettings(
            max_attempts=max_attempts,
            base_delay_sec=_non_negative(backfill_cfg, 'base_delay_sec', BACKFILL_BASE_DELAY_SECONDS),
            max_delay_sec=_non_negative(backfill_cfg, 'max_delay_sec', BACKFILL_MAX_DELAY_SECONDS),
            initial_history_days=_non_negative(backfill_cfg, 'initial_history_days', INITIAL_HISTORY_DAYS)
        )

        integrity_cfg = data.get('integrity', {}) or {}
        integrity = IntegritySettings(
            validity_window_days=_optional_positive(integrity_cfg, 'validity_window_days')
        )

        polling_cfg = data.get('polling', {}) or {}
        consumer_level = str(polling_cfg.get('consumer_level', DEFAULT_CONSUMER_LEVEL))
        if consumer_level not in [name for name, _ in intervals]:
            raise InvalidConfigError(
                "polling.consumer_level is not a configured interval",
                consumer_level=consumer_level
            )
        polling = PollingSettings(
            interval_sec=_non_negative(polling_cfg, 'interval_sec', POLL_INTERVAL_SECONDS),
            consumer_level=consumer_level,
            save_interval_sec=_non_negative(polling_cfg, 'save_interval_sec', SAVE_INTERVAL_SECONDS)
        )

        monitoring_cfg = data.get('monitoring', {}) or {}
        monitoring = MonitoringSettings(
            log_level=str(monitoring_cfg.get('log_level', 'INFO')).upper(),
            log_file=monitoring_cfg.get('log_file', DEFAULT_LOG_FILE)
        )

        traders = data.get('traders', []) or []
        if not isinstance(traders, list):
            raise InvalidConfigError("traders must be a list")

        return cls(
            environment=environment,
            market=market,
            gap_filling=gap_filling,
            backfill=backfill,
            integrity=integrity,
            polling=polling,
            monitoring=monitoring,
            traders=traders
        )

    def find_trader_setting(self, symbol: str, strategy_name: str) -> Dict[str, Any]:
        """
        Find the trader setting matching a symbol and strategy.

        The last matching entry wins. Returns an empty dict when none match.
        """
        found: Dict[str, Any] = {}
        for setting in self.traders:
            if setting.get('symbol') == symbol and setting.get('strategyName') == strategy_name:
                found = setting
        return found


def _parse_interval(entry: Any) -> Tuple[str, int]:
    if isinstance(entry, dict):
        name = entry.get('name')
        seconds = entry.get('seconds')
    elif isinstance(entry, (list, tuple)) and len(entry) == 2:
        name, seconds = entry
    else:
        raise InvalidConfigError("Interval entry must be {name, seconds}", entry=entry)

    if not name or seconds is None:
        raise InvalidConfigError("Interval entry needs a name and seconds", entry=entry)

    try:
        seconds = int(seconds)
    except (TypeError, ValueError):
        raise InvalidConfigError("Interval seconds must be an integer", entry=entry)

    return str(name), seconds


def _validate_intervals(intervals: List[Tuple[str, int]]) -> None:
    if not intervals:
        raise InvalidConfigError("At least the RAW interval must be configured")

    names = [name for name, _ in intervals]
    if len(set(names)) != len(names):
        raise InvalidConfigError("Interval names must be unique", names=names)

    previous = None
    for name, seconds in intervals:
        if seconds <= 0:
            raise InvalidConfigError("Interval duration must be positive", interval=name)
        if previous is not None and (seconds <= previous or seconds % previous != 0):
            raise InvalidConfigError(
                "Interval duration must be a larger multiple of the previous one",
                interval=name,
                seconds=seconds,
                previous=previous
            )
        previous = seconds


def _non_negative(section: Dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"{key} must be a number", value=value)
    if value < 0:
        raise InvalidConfigError(f"{key} must be non-negative", value=value)
    return value


def _optional_positive(section: Dict[str, Any], key: str) -> Optional[float]:
    value = section.get(key)
    if value is None:
        return None
    value = _non_negative(section, key, 0)
    if value == 0:
        raise InvalidConfigError(f"{key} must be positive when set")
    return value


def load_config(config_file: str) -> MarketConfig:
    """
    Load and validate the YAML configuration file.

    Args:
        config_file: Path to configuration file

    Returns:
        Validated MarketConfig

    Raises:
        MissingConfigError: If the file does not exist
        InvalidConfigError: If the YAML is malformed or values are invalid
    """
    path = Path(config_file)
    if not path.exists():
        raise MissingConfigError("Configuration file not found", path=str(path))

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"Configuration YAML is malformed: {e}", path=str(path))

    return MarketConfig.from_dict(data)
