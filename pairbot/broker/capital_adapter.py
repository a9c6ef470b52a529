from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pairbot.broker.base import BrokerAdapter, BrokerResult, is_already_closed_error
from pairbot.broker.capital_client import CapitalAPIError, CapitalClient, CapitalNotFoundError
from pairbot.models import Fill, Position, Quote, Side

LOGGER = logging.getLogger(__name__)


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_position(raw: dict[str, Any]) -> Position | None:
    """Flatten a Capital.com ``{position, market}`` entry into a :class:`Position`."""
    position = raw.get("position", raw)
    market = raw.get("market", {})
    deal_id = position.get("dealId")
    direction = str(position.get("direction", "")).upper()
    if not deal_id or direction not in ("BUY", "SELL"):
        return None
    return Position(
        id=str(deal_id),
        symbol=str(market.get("epic") or position.get("epic") or "").upper(),
        side=Side(direction),
        volume=_to_float(position.get("size")) or 0.0,
        open_price=_to_float(position.get("level")),
        stop_loss=_to_float(position.get("stopLevel")),
        take_profit=_to_float(position.get("profitLevel")),
        open_time=position.get("createdDateUTC") or position.get("createdDate"),
    )


def _deal_id_from_confirmation(confirmation: dict[str, Any]) -> str | None:
    for deal in confirmation.get("affectedDeals") or []:
        if str(deal.get("status", "")).upper() in ("OPENED", "OPEN", "") and deal.get("dealId"):
            return str(deal["dealId"])
    deal_id = confirmation.get("dealId")
    return str(deal_id) if deal_id else None


class CapitalBrokerAdapter(BrokerAdapter):
    """BrokerAdapter over the blocking :class:`CapitalClient`.

    Each call runs in a worker thread so the event loop keeps serving the
    webhook and timers while HTTP retries back off.
    """

    def __init__(self, client: CapitalClient, symbol: str, *, quote_cache_seconds: float = 1.0):
        self.client = client
        self.symbol = symbol.upper()
        self.quote_cache_seconds = max(0.0, float(quote_cache_seconds))
        self._cached_quote: Quote | None = None
        self._cached_at: float | None = None

    async def _call(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    async def subscribe(self, symbol: str) -> BrokerResult[None]:
        try:
            await self._call(self.client.get_market_details, symbol)
        except CapitalAPIError as exc:
            LOGGER.warning("Market lookup failed for %s: %s", symbol, exc)
            return BrokerResult.failure(str(exc))
        return BrokerResult.success()

    async def get_price(self, symbol: str) -> Quote | None:
        now = time.monotonic()
        if (
            self._cached_quote is not None
            and self._cached_at is not None
            and symbol.upper() == self.symbol
            and now - self._cached_at <= self.quote_cache_seconds
        ):
            return self._cached_quote
        try:
            bid, ask = await self._call(self.client.get_quote, symbol)
        except CapitalAPIError as exc:
            LOGGER.warning("Quote fetch failed for %s: %s", symbol, exc)
            return None
        quote = Quote(bid=bid, ask=ask, ts=time.time())
        if symbol.upper() == self.symbol:
            self._cached_quote = quote
            self._cached_at = now
        return quote

    async def get_positions(self) -> BrokerResult[list[Position]]:
        try:
            raw_positions = await self._call(self.client.get_positions)
        except CapitalAPIError as exc:
            LOGGER.warning("Positions fetch failed: %s", exc)
            return BrokerResult.failure(str(exc))
        positions = [p for p in (normalize_position(item) for item in raw_positions) if p is not None]
        return BrokerResult.success(positions)

    async def get_balance(self) -> BrokerResult[float]:
        try:
            accounts = await self._call(self.client.get_accounts)
        except CapitalAPIError as exc:
            return BrokerResult.failure(str(exc))
        if not accounts:
            return BrokerResult.failure("no accounts returned")
        chosen = next(
            (a for a in accounts if self.client.account_id and a.get("accountId") == self.client.account_id),
            None,
        ) or next((a for a in accounts if a.get("preferred")), accounts[0])
        balance = chosen.get("balance", {})
        value = _to_float(balance.get("balance") if isinstance(balance, dict) else balance)
        if value is None:
            return BrokerResult.failure("balance missing in account payload")
        return BrokerResult.success(value)

    async def place_market(
        self,
        side: Side,
        lot: float,
        sl: float | None = None,
        tp: float | None = None,
    ) -> BrokerResult[Fill]:
        try:
            response = await self._call(
                self.client.open_position,
                epic=self.symbol,
                direction=side.value,
                size=lot,
                stop_level=sl,
                profit_level=tp,
            )
            reference = response.get("dealReference")
            confirmation = await self._call(self.client.confirm_deal, reference) if reference else {}
        except CapitalAPIError as exc:
            LOGGER.warning("Market order %s %.2f failed: %s", side.value, lot, exc)
            return BrokerResult.failure(str(exc))

        status = str(confirmation.get("dealStatus", "ACCEPTED")).upper()
        if status == "REJECTED":
            reason = confirmation.get("reason") or "rejected"
            return BrokerResult.failure(f"order rejected: {reason}")
        deal_id = _deal_id_from_confirmation(confirmation) or response.get("dealId")
        if not deal_id:
            return BrokerResult.failure("order accepted without a deal id")
        return BrokerResult.success(Fill(id=str(deal_id), fill_price=_to_float(confirmation.get("level"))))

    async def close_position(self, position_id: str, volume: float | None = None) -> BrokerResult[None]:
        try:
            await self._call(self.client.close_position, position_id, volume)
        except CapitalNotFoundError:
            return BrokerResult.closed_already()
        except CapitalAPIError as exc:
            if is_already_closed_error(str(exc)):
                return BrokerResult.closed_already()
            LOGGER.warning("Close %s failed: %s", position_id, exc)
            return BrokerResult.failure(str(exc))
        return BrokerResult.success()

    async def modify_position(
        self,
        position_id: str,
        *,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> BrokerResult[None]:
        try:
            await self._call(
                self.client.update_position,
                position_id,
                stop_level=stop_loss,
                profit_level=take_profit,
            )
        except CapitalNotFoundError:
            return BrokerResult.closed_already()
        except CapitalAPIError as exc:
            return BrokerResult.failure(str(exc))
        return BrokerResult.success()

    async def close(self) -> None:
        await self._call(self.client.session.close)
