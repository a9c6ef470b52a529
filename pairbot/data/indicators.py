from __future__ import annotations

from pairbot.data.candles import Candle


def true_range(candle: Candle, prev_close: float) -> float:
    return max(
        candle.high - candle.low,
        abs(candle.high - prev_close),
        abs(candle.low - prev_close),
    )


def atr(candles: list[Candle], period: int = 14) -> float:
    """Simple-average ATR over the last ``period`` closed candles.

    Needs ``period + 1`` candles so every TR has a previous close. Returns
    0.0 when there is not enough history.
    """
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(candles) < period + 1:
        return 0.0
    window = candles[-(period + 1):]
    tr_values = [true_range(curr, prev.close) for prev, curr in zip(window, window[1:])]
    return sum(tr_values) / len(tr_values)


def trail_trigger(atr_value: float, *, multiplier: float, trail_step: float) -> float:
    return max(atr_value * multiplier, trail_step * 1.5, 1.0)
