"""
Unit tests for configuration loading.
"""

from pathlib import Path

import pytest

from histmarket.core.config import MarketConfig, load_config
from histmarket.core.constants import DEFAULT_INTERVALS, Environment, FillMethod
from histmarket.core.exceptions import InvalidConfigError, MissingConfigError

SAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config" / "config.yaml"


def write_yaml(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


def test_defaults():
    config = MarketConfig.from_dict(None)

    assert config.environment == Environment.DEV
    assert config.market.intervals == list(DEFAULT_INTERVALS)
    assert config.market.raw_bucket_seconds == 60
    assert config.market.retention_seconds is None
    assert config.gap_filling.recent_window_days == 14
    assert config.gap_filling.older_gap_method == FillMethod.CARRY_FORWARD
    assert config.polling.consumer_level == "MIN5"
    assert config.traders == []


def test_sample_config_loads():
    config = load_config(str(SAMPLE_CONFIG))

    assert [name for name, _ in config.market.intervals][-1] == "DAY1"
    assert config.backfill.max_attempts == 5
    assert config.find_trader_setting("btcusd", "log")["strategyName"] == "log"


def test_custom_values(tmp_path):
    path = write_yaml(tmp_path, """
environment: paper
market:
  intervals:
    - {name: RAW, seconds: 30}
    - [MIN1, 60]
    - {name: MIN10, seconds: 600}
  retention_days: 2
gap_filling:
  recent_window_days: 3.5
  older_gap_method: linear
  fill_unsourced_recent: false
polling:
  consumer_level: MIN1
monitoring:
  log_level: debug
  log_file: null
""")

    config = load_config(str(path))

    assert config.environment == Environment.PAPER
    assert config.market.intervals == [("RAW", 30), ("MIN1", 60), ("MIN10", 600)]
    assert config.market.raw_bucket_seconds == 30
    assert config.market.retention_seconds == 2 * 86400
    assert config.gap_filling.recent_window_days == 3.5
    assert config.gap_filling.older_gap_method == FillMethod.LINEAR
    assert config.gap_filling.fill_unsourced_recent is False
    assert config.polling.consumer_level == "MIN1"
    assert config.monitoring.log_level == "DEBUG"
    assert config.monitoring.log_file is None


@pytest.mark.parametrize("data", [
    {'environment': 'prod'},
    {'market': {'intervals': []}},
    {'market': {'intervals': [{'name': 'RAW', 'seconds': 60}, {'name': 'MIN7', 'seconds': 420}]}},
    {'market': {'intervals': [{'name': 'RAW', 'seconds': 60}, {'name': 'RAW', 'seconds': 120}]}},
    {'market': {'intervals': [{'name': 'RAW'}]}},
    {'market': {'retention_days': 0}},
    {'gap_filling': {'older_gap_method': 'spline'}},
    {'gap_filling': {'recent_window_days': -1}},
    {'backfill': {'max_attempts': 0}},
    {'polling': {'consumer_level': 'WEEK1'}},
    {'polling': {'interval_sec': 'often'}},
    {'traders': {'symbol': 'btcusd'}},
])
def test_invalid_values(data):
    with pytest.raises(InvalidConfigError):
        MarketConfig.from_dict(data)


def test_missing_file(tmp_path):
    with pytest.raises(MissingConfigError):
        load_config(str(tmp_path / "nope.yaml"))


def test_malformed_yaml(tmp_path):
    path = write_yaml(tmp_path, "market: [unclosed\n")

    with pytest.raises(InvalidConfigError):
        load_config(str(path))


def test_trader_setting_last_match_wins():
    config = MarketConfig.from_dict({
        'traders': [
            {'symbol': 'btcusd', 'strategyName': 'log', 'size': 1},
            {'symbol': 'ethusd', 'strategyName': 'log', 'size': 2},
            {'symbol': 'btcusd', 'strategyName': 'log', 'size': 3},
        ]
    })

    assert config.find_trader_setting('btcusd', 'log')['size'] == 3
    assert config.find_trader_setting('btcusd', 'other') == {}
