from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pairbot.broker.base import BrokerAdapter
from pairbot.data.candles import Candle, CandleAggregator
from pairbot.data.indicators import atr
from pairbot.gating.freeze import FreezeDetector, FreezeTransition
from pairbot.models import Quote

LOGGER = logging.getLogger(__name__)

ATR_TIMEFRAME = "5M"


@dataclass(slots=True)
class TickUpdate:
    quote: Quote
    closed: dict[str, Candle] = field(default_factory=dict)
    transition: FreezeTransition | None = None


class MarketDataIngress:
    """Polls the broker for the instrument quote and keeps derived market state.

    Every accepted quote feeds the candle aggregator and the freeze detector.
    A missing quote is skipped without touching market state; after
    ``feed_lost_polls`` misses in a row the feed is flagged lost until the
    next quote arrives.
    """

    def __init__(
        self,
        broker: BrokerAdapter,
        symbol: str,
        *,
        aggregator: CandleAggregator | None = None,
        freeze: FreezeDetector | None = None,
        atr_period: int = 14,
        feed_lost_polls: int = 8,
    ):
        self.broker = broker
        self.symbol = symbol
        self.aggregator = aggregator or CandleAggregator()
        self.freeze = freeze or FreezeDetector()
        self.atr_period = atr_period
        self.latest: Quote | None = None
        self.feed_lost_polls = max(1, int(feed_lost_polls))
        self.failed_polls = 0
        self.feed_lost = False

    @property
    def frozen(self) -> bool:
        return self.freeze.frozen

    async def poll(self) -> TickUpdate | None:
        quote = await self.broker.get_price(self.symbol)
        if quote is None:
            self.failed_polls += 1
            LOGGER.debug("No quote for %s (%d in a row)", self.symbol, self.failed_polls)
            if not self.feed_lost and self.failed_polls >= self.feed_lost_polls:
                self.feed_lost = True
                LOGGER.warning("Feed lost for %s after %d polls without a quote", self.symbol, self.failed_polls)
            return None
        if self.feed_lost:
            LOGGER.info("Feed restored for %s after %d missed polls", self.symbol, self.failed_polls)
        self.feed_lost = False
        self.failed_polls = 0
        return self.ingest(quote)

    def ingest(self, quote: Quote) -> TickUpdate:
        self.latest = quote
        closed = self.aggregator.on_tick(quote)
        for timeframe, candle in closed.items():
            LOGGER.debug(
                "Candle closed %s %s O=%.2f H=%.2f L=%.2f C=%.2f",
                timeframe,
                candle.bucket_start,
                candle.open,
                candle.high,
                candle.low,
                candle.close,
            )
        transition = self.freeze.observe(quote.mid)
        if transition is FreezeTransition.FROZEN:
            LOGGER.warning("Market feed frozen for %s at %.2f", self.symbol, quote.mid)
        elif transition is FreezeTransition.RESUMED:
            LOGGER.info("Market feed resumed for %s at %.2f", self.symbol, quote.mid)
        return TickUpdate(quote=quote, closed=closed, transition=transition)

    def atr(self) -> float:
        return atr(self.aggregator.series(ATR_TIMEFRAME), self.atr_period)
