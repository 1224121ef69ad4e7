"""
Unit tests for gap detection, interpolation, backfill and retries.
"""

import pytest
from decimal import Decimal

from histmarket.connectors.backfill_client import RetryPolicy, call_with_retry
from histmarket.core.constants import FillMethod
from histmarket.core.exceptions import SourceUnavailableError
from histmarket.core.types import Gap, Tick
from histmarket.data.gap_filler import GapFiller, GapFillPolicy, detect_gaps, interpolate
from histmarket.data.interval_aggregator import IntervalAggregator
from histmarket.data.raw_series import RawSeries

from tests.fakes import BASE, DAY, MINUTE, FakeClock, make_ticks

SYMBOL = "btcusd"


def build_aggregator(prices):
    raw = RawSeries(width=60)
    for tick in make_ticks(prices):
        raw.push(tick)
    aggregator = IntervalAggregator(raw)
    aggregator.rebuild()
    return aggregator


def build_filler(aggregator, client, clock, **policy):
    return GapFiller(
        aggregator,
        client,
        policy=GapFillPolicy(**policy),
        clock=clock,
        sleep=clock.sleep,
        symbol=SYMBOL
    )


# ============================================================================
# Detection and interpolation helpers
# ============================================================================

def test_detect_gaps():
    aggregator = build_aggregator({0: "1", 1: "1", 4: "1", 5: "1", 9: "1"})

    gaps = detect_gaps(aggregator.raw)

    assert gaps == [
        Gap(start=BASE + 2 * MINUTE, end=BASE + 4 * MINUTE, width=60),
        Gap(start=BASE + 6 * MINUTE, end=BASE + 9 * MINUTE, width=60),
    ]
    assert [g.slots for g in gaps] == [2, 3]


def test_detect_gaps_clipped():
    aggregator = build_aggregator({0: "1", 10: "1"})

    gaps = detect_gaps(aggregator.raw, start=BASE + 3 * MINUTE + 20, end=BASE + 7 * MINUTE)

    assert gaps == [Gap(start=BASE + 4 * MINUTE, end=BASE + 7 * MINUTE, width=60)]


def test_detect_gaps_short_series():
    assert detect_gaps(RawSeries()) == []
    assert detect_gaps(build_aggregator({0: "1"}).raw) == []


def test_linear_interpolation_uses_finer_exponent():
    before = Tick(time=BASE, price=Decimal("100.0"))
    after = Tick(time=BASE + 3 * MINUTE, price=Decimal("103.00"))
    gap = Gap(start=BASE + MINUTE, end=BASE + 3 * MINUTE, width=60)

    ticks = interpolate(before, after, gap, FillMethod.LINEAR)

    assert [str(t.price) for t in ticks] == ["101.00", "102.00"]
    assert all(t.interpolated for t in ticks)


def test_linear_interpolation_stays_within_bounds():
    before = Tick(time=BASE, price=Decimal("10"))
    after = Tick(time=BASE + 8 * MINUTE, price=Decimal("7"))
    gap = Gap(start=BASE + MINUTE, end=BASE + 8 * MINUTE, width=60)

    ticks = interpolate(before, after, gap, FillMethod.LINEAR)

    assert len(ticks) == 7
    assert all(Decimal("7") <= t.price <= Decimal("10") for t in ticks)
    prices = [t.price for t in ticks]
    assert prices == sorted(prices, reverse=True)


def test_linear_interpolation_capped_at_stored_precision():
    before = Tick(time=BASE, price=Decimal("999999999999999999"))
    after = Tick(time=BASE + 2 * MINUTE, price=Decimal("0.5"))
    gap = Gap(start=BASE + MINUTE, end=BASE + 2 * MINUTE, width=60)

    ticks = interpolate(before, after, gap, FillMethod.LINEAR)

    assert [str(t.price) for t in ticks] == ["500000000000000000"]


def test_carry_forward_without_after():
    before = Tick(time=BASE, price=Decimal("5.5"))
    gap = Gap(start=BASE + MINUTE, end=BASE + 3 * MINUTE, width=60)

    ticks = interpolate(before, None, gap, FillMethod.LINEAR)

    assert [t.price for t in ticks] == [Decimal("5.5"), Decimal("5.5")]


# ============================================================================
# Older gaps
# ============================================================================

def test_fill_older_gaps_carry_forward(fake_client, old_clock):
    aggregator = build_aggregator({0: "100", 1: "101", 2: "99", 4: "103"})
    filler = build_filler(aggregator, fake_client, old_clock)

    filled = filler.fill_older_gaps()

    assert filled == 1
    tick = aggregator.raw.get_at(BASE + 3 * MINUTE)
    assert tick.price == Decimal("99")
    assert tick.interpolated

    bucket = aggregator.get_interval(BASE, "MIN5")
    assert not bucket.provisional
    assert bucket.low == Decimal("99")
    assert bucket.interpolated_count == 1
    # Older gaps never touch the source
    assert fake_client.calls == []


def test_fill_older_gaps_linear(fake_client, old_clock):
    aggregator = build_aggregator({0: "100", 1: "101", 2: "99", 4: "103"})
    filler = build_filler(aggregator, fake_client, old_clock, older_method=FillMethod.LINEAR)

    filler.fill_older_gaps()

    assert aggregator.raw.get_at(BASE + 3 * MINUTE).price == Decimal("101")


def test_fill_older_gaps_idempotent(fake_client, old_clock):
    aggregator = build_aggregator({0: "100", 4: "103", 9: "90"})
    filler = build_filler(aggregator, fake_client, old_clock)

    assert filler.fill_older_gaps() == 7
    snapshot = list(aggregator.raw)

    assert filler.fill_older_gaps() == 0
    assert list(aggregator.raw) == snapshot


def test_fill_older_gaps_leaves_recent_window(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 4: "103"})
    filler = build_filler(aggregator, fake_client, recent_clock)

    assert filler.fill_older_gaps() == 0
    assert aggregator.raw.get_at(BASE + 2 * MINUTE) is None


# ============================================================================
# Recent gaps
# ============================================================================

def test_fill_gaps_refetches_from_source(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 1: "101", 2: "99", 4: "103"})
    fake_client.add(make_ticks({3: "102"}))
    filler = build_filler(aggregator, fake_client, recent_clock)

    filled = filler.fill_gaps()

    assert filled == 1
    tick = aggregator.raw.get_at(BASE + 3 * MINUTE)
    assert tick.price == Decimal("102")
    assert not tick.interpolated
    assert ('historical', SYMBOL, BASE + 3 * MINUTE, BASE + 4 * MINUTE) in fake_client.calls
    assert aggregator.get_interval(BASE, "MIN5").high == Decimal("103")


def test_fill_gaps_carries_forward_unsourced_slots(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 1: "101", 2: "99", 4: "103"})
    filler = build_filler(aggregator, fake_client, recent_clock)

    assert filler.fill_gaps() == 1

    tick = aggregator.raw.get_at(BASE + 3 * MINUTE)
    assert tick.price == Decimal("99")
    assert tick.interpolated


def test_fill_gaps_can_leave_unsourced_slots(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 4: "103"})
    filler = build_filler(aggregator, fake_client, recent_clock, fill_unsourced_recent=False)

    assert filler.fill_gaps() == 0
    assert len(detect_gaps(aggregator.raw)) == 1


def test_fill_gaps_twice_with_carry_forward(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 1: "101", 4: "103"})
    fake_client.add(make_ticks({2: "102"}))
    filler = build_filler(aggregator, fake_client, recent_clock)

    assert filler.fill_gaps() == 2
    ticks = list(aggregator.raw)
    calls = len(fake_client.calls)

    assert filler.fill_gaps() == 0
    assert list(aggregator.raw) == ticks
    assert len(fake_client.calls) == calls


def test_fill_gaps_twice_leaving_unsourced_slots(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 1: "101", 4: "103"})
    fake_client.add(make_ticks({2: "102"}))
    filler = build_filler(aggregator, fake_client, recent_clock, fill_unsourced_recent=False)

    assert filler.fill_gaps() == 1
    ticks = list(aggregator.raw)
    bucket = aggregator.get_interval(BASE, "MIN5")
    calls = len(fake_client.calls)

    # The remaining gap is asked for again and still comes back empty
    assert filler.fill_gaps() == 0
    assert len(fake_client.calls) == calls + 1
    assert list(aggregator.raw) == ticks
    assert aggregator.get_interval(BASE, "MIN5") == bucket


def test_fill_gaps_ignores_ticks_outside_gap(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 2: "102"})
    # A misbehaving source returning more than asked for
    fake_client.get_historical = lambda symbol, start, end: make_ticks({1: "101", 2: "500"})
    filler = build_filler(aggregator, fake_client, recent_clock)

    assert filler.fill_gaps() == 1
    assert aggregator.raw.get_at(BASE + 2 * MINUTE).price == Decimal("102")


def test_gap_straddling_window_start(fake_client):
    aggregator = build_aggregator({0: "100", 10: "110"})
    fake_client.add(make_ticks({2: "222", 7: "107"}))
    clock = FakeClock(BASE + 5 * MINUTE + 14 * DAY)
    filler = build_filler(aggregator, fake_client, clock)

    recent = filler.fill_gaps()
    older = filler.fill_older_gaps()

    raw = aggregator.raw
    assert recent == 5
    assert older == 4
    assert len(raw) == 11
    # Only the recent part was requested from the source
    assert ('historical', SYMBOL, BASE + 5 * MINUTE, BASE + 10 * MINUTE) in fake_client.calls
    assert raw.get_at(BASE + 2 * MINUTE).price == Decimal("100")
    assert raw.get_at(BASE + 2 * MINUTE).interpolated
    assert raw.get_at(BASE + 5 * MINUTE).price == Decimal("100")
    assert raw.get_at(BASE + 7 * MINUTE).price == Decimal("107")
    assert not raw.get_at(BASE + 7 * MINUTE).interpolated
    assert raw.get_at(BASE + 9 * MINUTE).price == Decimal("107")


def test_fill_gaps_requires_symbol(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 4: "103"})
    filler = GapFiller(aggregator, fake_client, clock=recent_clock, sleep=recent_clock.sleep)

    with pytest.raises(ValueError):
        filler.fill_gaps()


# ============================================================================
# Backfill till now
# ============================================================================

def test_fulfil_till_now_empty_series(fake_client, recent_clock):
    aggregator = IntervalAggregator(RawSeries())
    fake_client.add(make_ticks({m: str(100 + m) for m in range(6)}))
    fake_client.tickers.append(Tick(time=BASE + 3600, price=Decimal("160")))
    filler = GapFiller(aggregator, fake_client, clock=recent_clock, sleep=recent_clock.sleep)

    pushed = filler.fulfil_till_now(SYMBOL)

    assert pushed == 7
    assert filler.symbol == SYMBOL
    assert aggregator.raw.last_tick.price == Decimal("160")
    _, _, start, end = fake_client.calls[-1]
    assert start == BASE + 3600 - 14 * DAY
    assert end == BASE + 3600


def test_fulfil_till_now_resumes_after_last_slot(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100", 1: "101", 2: "102"})
    fake_client.add(make_ticks({m: str(100 + m) for m in range(6)}))
    filler = build_filler(aggregator, fake_client, recent_clock)

    pushed = filler.fulfil_till_now(SYMBOL)

    assert pushed == 3
    assert fake_client.calls == [
        ('ticker', SYMBOL),
        ('historical', SYMBOL, BASE + 3 * MINUTE, BASE + 3600),
    ]
    assert aggregator.get_interval(BASE, "MIN5").close == Decimal("104")


def test_fulfil_till_now_retries_transient_failures(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100"})
    fake_client.failures = 2
    filler = build_filler(aggregator, fake_client, recent_clock)

    filler.fulfil_till_now(SYMBOL)

    assert recent_clock.sleeps == [1.0, 2.0]


def test_fulfil_till_now_gives_up(fake_client, recent_clock):
    aggregator = build_aggregator({0: "100"})
    fake_client.failures = 100
    filler = build_filler(aggregator, fake_client, recent_clock)

    with pytest.raises(SourceUnavailableError):
        filler.fulfil_till_now(SYMBOL)

    assert recent_clock.sleeps == [1.0, 2.0, 4.0, 8.0]
    assert len(aggregator.raw) == 1


# ============================================================================
# Retry helper
# ============================================================================

def test_retry_delay_is_capped():
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=5.0)

    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_call_with_retry_does_not_retry_other_errors():
    sleeps = []

    def broken():
        raise KeyError("bad")

    with pytest.raises(KeyError):
        call_with_retry(broken, sleep=sleeps.append)

    assert sleeps == []


def test_call_with_retry_returns_value_after_connection_errors():
    attempts = []

    def flaky(value):
        attempts.append(value)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return value * 2

    sleeps = []
    result = call_with_retry(flaky, 21, policy=RetryPolicy(base_delay=0.5), sleep=sleeps.append)

    assert result == 42
    assert sleeps == [0.5, 1.0]
