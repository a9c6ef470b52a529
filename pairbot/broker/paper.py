from __future__ import annotations

import logging
import uuid

from pairbot.broker.base import BrokerAdapter, BrokerResult
from pairbot.clock import utc_now
from pairbot.models import Fill, Position, Quote, Side

LOGGER = logging.getLogger(__name__)


class PaperBroker(BrokerAdapter):
    """In-memory broker for dry-run mode.

    Market orders fill at the current quote (ask for buys, bid for sells).
    Quotes come from ``price_feed`` when one is given (live prices, simulated
    fills) or are pushed in with :meth:`set_quote`. With no quote, orders are
    rejected the way a broker without a price would reject them.
    """

    def __init__(
        self,
        symbol: str = "GOLD",
        *,
        balance: float = 10_000.0,
        price_feed: BrokerAdapter | None = None,
    ):
        self.symbol = symbol
        self.price_feed = price_feed
        self.balance = balance
        self.quote: Quote | None = None
        self.positions: dict[str, Position] = {}
        self.closed_ids: list[str] = []
        self.fail_next_orders = 0

    def set_quote(self, bid: float, ask: float, ts: float | None = None) -> Quote:
        stamp = ts if ts is not None else utc_now().timestamp()
        self.quote = Quote(bid=float(bid), ask=float(ask), ts=float(stamp))
        return self.quote

    def inject_position(self, position: Position) -> None:
        self.positions[position.id] = position

    async def get_price(self, symbol: str) -> Quote | None:
        if symbol.upper() != self.symbol.upper():
            return None
        if self.price_feed is not None:
            quote = await self.price_feed.get_price(symbol)
            if quote is not None:
                self.quote = quote
            return quote
        return self.quote

    async def get_positions(self) -> BrokerResult[list[Position]]:
        return BrokerResult.success(list(self.positions.values()))

    async def get_balance(self) -> BrokerResult[float]:
        return BrokerResult.success(self.balance)

    async def place_market(
        self,
        side: Side,
        lot: float,
        sl: float | None = None,
        tp: float | None = None,
    ) -> BrokerResult[Fill]:
        if self.fail_next_orders > 0:
            self.fail_next_orders -= 1
            return BrokerResult.failure("PAPER: order rejected")
        if self.quote is None:
            return BrokerResult.failure("PAPER: no quote available")
        price = self.quote.entry_for(side)
        position_id = f"PAPER-{uuid.uuid4().hex[:10]}"
        self.positions[position_id] = Position(
            id=position_id,
            symbol=self.symbol,
            side=side,
            volume=lot,
            open_price=price,
            stop_loss=sl,
            take_profit=tp,
            open_time=utc_now().isoformat(),
        )
        LOGGER.info("PAPER: filled %s %.2f @ %.2f (%s)", side.value, lot, price, position_id)
        return BrokerResult.success(Fill(id=position_id, fill_price=price))

    async def close_position(self, position_id: str, volume: float | None = None) -> BrokerResult[None]:
        position = self.positions.get(position_id)
        if position is None:
            return BrokerResult.closed_already()
        if volume is not None and 0 < volume < position.volume:
            position.volume = round(position.volume - volume, 8)
            return BrokerResult.success()
        if self.quote is not None and position.open_price is not None:
            exit_price = self.quote.price_for(position.side)
            self.balance += (exit_price - position.open_price) * position.side.sign * position.volume * 100
        del self.positions[position_id]
        self.closed_ids.append(position_id)
        return BrokerResult.success()

    async def modify_position(
        self,
        position_id: str,
        *,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> BrokerResult[None]:
        position = self.positions.get(position_id)
        if position is None:
            return BrokerResult.closed_already()
        if stop_loss is not None:
            position.stop_loss = stop_loss
        if take_profit is not None:
            position.take_profit = take_profit
        return BrokerResult.success()

    async def close(self) -> None:
        if self.price_feed is not None:
            await self.price_feed.close()
