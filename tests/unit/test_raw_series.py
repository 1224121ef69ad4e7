"""
Unit tests for the raw tick series.
"""

import pytest
from decimal import Decimal

from histmarket.core.exceptions import DataValidationError, OutOfOrderError
from histmarket.core.types import Tick
from histmarket.data.raw_series import RawSeries

from tests.fakes import BASE, make_ticks


@pytest.fixture
def series():
    raw = RawSeries(width=60)
    for tick in make_ticks({0: "100", 1: "101", 2: "99", 4: "103", 5: "104"}):
        raw.push(tick)
    return raw


def test_push_aligns_to_bucket(series):
    """A tick inside a bucket is stored under the bucket start."""
    series.push(Tick(time=BASE + 6 * 60 + 17, price=Decimal("105")))

    assert BASE + 6 * 60 in series.keys()
    assert series.get_at(BASE + 6 * 60 + 59).price == Decimal("105")
    assert series.get_at(BASE + 6 * 60 + 59).time == BASE + 6 * 60 + 17


def test_get_at_missing_slot_returns_none(series):
    assert series.get_at(BASE + 3 * 60) is None
    assert BASE + 3 * 60 not in series


def test_duplicate_slot_later_push_wins(series):
    series.push(Tick(time=BASE + 60 + 30, price=Decimal("150")))

    assert len(series) == 5
    assert series.get_at(BASE + 60).price == Decimal("150")


def test_gap_insert_keeps_order(series):
    series.push(Tick(time=BASE + 3 * 60, price=Decimal("102")))

    keys = series.keys()
    assert keys == sorted(keys)
    assert keys == [BASE + m * 60 for m in range(6)]


def test_out_of_order_rejected_and_series_unchanged(series):
    before = list(series)

    with pytest.raises(OutOfOrderError):
        series.push(Tick(time=BASE - 60, price=Decimal("1")))

    assert list(series) == before


def test_range_is_half_open_and_ordered(series):
    ticks = list(series.range(BASE + 60, BASE + 4 * 60))

    assert [t.price for t in ticks] == [Decimal("101"), Decimal("99")]


def test_range_is_restartable_and_lazy(series):
    view = series.range(BASE, BASE + 10 * 60)

    assert len(list(view)) == 5
    assert len(list(view)) == 5

    series.push(Tick(time=BASE + 3 * 60, price=Decimal("102")))
    assert len(list(view)) == 6


def test_trim_sets_retention_floor(series):
    removed = series.trim(BASE + 2 * 60)

    assert removed == 2
    assert series.first_time == BASE + 2 * 60

    with pytest.raises(OutOfOrderError):
        series.push(Tick(time=BASE + 60, price=Decimal("1")))


def test_trim_everything_keeps_floor():
    raw = RawSeries(width=60)
    raw.push(Tick(time=BASE, price=Decimal("1")))
    raw.trim(BASE + 600)

    assert len(raw) == 0
    assert raw.min_retained_time == BASE + 600

    with pytest.raises(OutOfOrderError):
        raw.push(Tick(time=BASE + 540, price=Decimal("1")))

    raw.push(Tick(time=BASE + 600, price=Decimal("2")))
    assert len(raw) == 1


def test_empty_series_accepts_any_time():
    raw = RawSeries(width=60)
    assert raw.min_retained_time is None

    raw.push(Tick(time=5, price=Decimal("1")))
    assert raw.first_time == 0


def test_csv_mirror_and_disable():
    raw = RawSeries(width=60, csv_enabled=True)
    raw.push(Tick(time=BASE, price=Decimal("1.25"), interpolated=True))
    raw.push(Tick(time=BASE + 120, price=Decimal("2.50")))

    assert raw.csv_enabled
    assert list(raw.csv_rows()) == [f"{BASE},1.25,1", f"{BASE + 120},2.50,0"]

    raw.disable_csv()
    assert not raw.csv_enabled
    # Rows are still derivable from the ticks
    assert list(raw.csv_rows()) == [f"{BASE},1.25,1", f"{BASE + 120},2.50,0"]


def test_to_frame_columns(series):
    df = series.to_frame()

    assert list(df.columns) == ['time', 'timestamp', 'price', 'interpolated']
    assert len(df) == 5
    assert df['price'].iloc[2] == 99.0


@pytest.mark.parametrize("kwargs", [
    {'time': 1.5, 'price': Decimal("1")},
    {'time': True, 'price': Decimal("1")},
    {'time': 60, 'price': Decimal("0")},
    {'time': 60, 'price': Decimal("-3")},
    {'time': 60, 'price': "abc"},
    {'time': 60, 'price': Decimal("NaN")},
    {'time': 60, 'price': Decimal("0.12345678901234567890123")},
    {'time': 60, 'price': Decimal("1E-200")},
    {'time': 60, 'price': Decimal("1E+200")},
])
def test_malformed_tick_rejected(kwargs):
    with pytest.raises(DataValidationError):
        Tick(**kwargs)


def test_tick_normalizes_price():
    tick = Tick(time=60, price="101.50")
    assert tick.price == Decimal("101.50")
    assert str(tick.price) == "101.50"
