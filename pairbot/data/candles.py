from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from pairbot.clock import TIMEFRAME_SECONDS, bucket_start
from pairbot.models import Quote


@dataclass(slots=True)
class Candle:
    bucket_start: int
    open: float
    high: float
    low: float
    close: float


def _mid(bid: float | None, ask: float | None) -> float:
    if bid is not None and ask is not None:
        return (bid + ask) / 2.0
    if bid is not None:
        return float(bid)
    if ask is not None:
        return float(ask)
    raise ValueError("Cannot compute price midpoint")


class _TimeframeBuffer:
    def __init__(self, seconds: int, capacity: int):
        self.seconds = seconds
        self.closed: deque[Candle] = deque(maxlen=capacity)
        self.current: Candle | None = None

    def update(self, mid: float, ts: float) -> Candle | None:
        start = bucket_start(ts, self.seconds)
        current = self.current
        if current is None or start > current.bucket_start:
            finished = current
            if finished is not None:
                self.closed.append(finished)
            self.current = Candle(bucket_start=start, open=mid, high=mid, low=mid, close=mid)
            return finished
        if start < current.bucket_start:
            # out-of-order tick from an already closed bucket
            return None
        if mid > current.high:
            current.high = mid
        if mid < current.low:
            current.low = mid
        current.close = mid
        return None


class CandleAggregator:
    """Builds 1m/3m/5m OHLC candles from mid-price ticks.

    Candles are bucketed by wall clock: a bucket closes implicitly when the
    first tick of a later bucket arrives. Closed candles live in bounded ring
    buffers, oldest evicted first.
    """

    def __init__(self, capacity: int = 400, timeframes: dict[str, int] | None = None):
        frames = timeframes or TIMEFRAME_SECONDS
        self._buffers = {name: _TimeframeBuffer(seconds, capacity) for name, seconds in frames.items()}

    @property
    def timeframes(self) -> list[str]:
        return list(self._buffers)

    def on_tick(self, quote: Quote) -> dict[str, Candle]:
        """Feed one quote; returns the candles that closed on this tick."""
        mid = _mid(quote.bid, quote.ask)
        finished: dict[str, Candle] = {}
        for name, buffer in self._buffers.items():
            candle = buffer.update(mid, quote.ts)
            if candle is not None:
                finished[name] = candle
        return finished

    def _buffer(self, timeframe: str) -> _TimeframeBuffer:
        key = timeframe.strip().upper()
        if key not in self._buffers:
            raise ValueError(f"Unsupported timeframe {timeframe}")
        return self._buffers[key]

    def last_closed(self, timeframe: str) -> Candle | None:
        closed = self._buffer(timeframe).closed
        return closed[-1] if closed else None

    def series(self, timeframe: str, n: int | None = None) -> list[Candle]:
        closed = list(self._buffer(timeframe).closed)
        if n is None:
            return closed
        if n <= 0:
            return []
        return closed[-n:]

    def current(self, timeframe: str) -> Candle | None:
        return self._buffer(timeframe).current
