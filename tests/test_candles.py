from __future__ import annotations

import pytest

from pairbot.data.candles import Candle, CandleAggregator
from pairbot.models import Quote

BASE = 1_700_000_100  # multiple of 300


def _q(mid: float, ts: float) -> Quote:
    return Quote(bid=mid, ask=mid, ts=ts)


def test_single_bucket_ohlc_matches_tick_set() -> None:
    agg = CandleAggregator()
    mids = [2000.0, 2003.5, 1998.25, 2001.0]
    for offset, mid in enumerate(mids):
        agg.on_tick(_q(mid, BASE + offset))

    current = agg.current("1M")
    assert current is not None
    assert current.bucket_start == BASE - BASE % 60
    assert current.open == pytest.approx(mids[0])
    assert current.high == pytest.approx(max(mids))
    assert current.low == pytest.approx(min(mids))
    assert current.close == pytest.approx(mids[-1])
    assert agg.last_closed("1M") is None


def test_new_bucket_closes_previous_candle() -> None:
    agg = CandleAggregator()
    agg.on_tick(_q(2000.0, BASE))
    agg.on_tick(_q(2002.0, BASE + 30))
    closed = agg.on_tick(_q(2001.0, BASE + 60))

    assert "1M" in closed
    assert "3M" not in closed
    assert closed["1M"] == Candle(bucket_start=BASE, open=2000.0, high=2002.0, low=2000.0, close=2002.0)
    assert agg.last_closed("1m") == closed["1M"]
    assert agg.current("1M").open == pytest.approx(2001.0)


def test_out_of_order_tick_is_ignored() -> None:
    agg = CandleAggregator()
    agg.on_tick(_q(2000.0, BASE + 60))
    agg.on_tick(_q(1900.0, BASE))

    current = agg.current("1M")
    assert current.bucket_start == BASE + 60
    assert current.low == pytest.approx(2000.0)
    assert agg.series("1M") == []


def test_bucket_starts_strictly_increase_and_ring_is_bounded() -> None:
    agg = CandleAggregator(capacity=5)
    for minute in range(12):
        agg.on_tick(_q(2000.0 + minute, BASE + minute * 60))

    series = agg.series("1M")
    assert len(series) == 5
    starts = [candle.bucket_start for candle in series]
    assert starts == sorted(set(starts))
    assert series[-1].bucket_start == BASE + 10 * 60
    assert len(agg.series("1M", 2)) == 2
    assert agg.series("1M", 0) == []


def test_unknown_timeframe_raises() -> None:
    agg = CandleAggregator()
    with pytest.raises(ValueError):
        agg.series("15M")
