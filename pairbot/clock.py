from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]

TIMEFRAME_SECONDS = {
    "1M": 60,
    "3M": 180,
    "5M": 300,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def monotonic() -> float:
    return time.monotonic()


def bucket_start(ts: float, timeframe_seconds: int) -> int:
    if timeframe_seconds <= 0:
        raise ValueError("timeframe_seconds must be > 0")
    return int(math.floor(ts / timeframe_seconds) * timeframe_seconds)


class ManualClock:
    """Settable clock for deterministic scheduling."""

    def __init__(self, start: float = 0.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += float(seconds)
        return self.now
