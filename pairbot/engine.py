from __future__ import annotations

import asyncio
import logging
from typing import Any

from pairbot.broker.base import BrokerAdapter
from pairbot.clock import Clock, monotonic
from pairbot.config import AppConfig
from pairbot.data.candles import CandleAggregator
from pairbot.data.market_data import MarketDataIngress, TickUpdate
from pairbot.execution.pair_manager import PairManager, Sleep
from pairbot.gating.admission import AdmissionController
from pairbot.gating.approval import ApprovalRegistry
from pairbot.gating.freeze import FreezeDetector, FreezeTransition
from pairbot.monitoring.alerts import AlertDispatcher
from pairbot.monitoring.events import EngineEvent, EventBus, EventKind
from pairbot.signals.router import SignalRouter

LOGGER = logging.getLogger(__name__)


class Engine:
    """Holds all runtime state and runs the tick and reconcile loops.

    Everything mutates on one asyncio loop; the webhook handlers, the tick
    task and the reconcile task interleave only at awaited broker calls.
    """

    def __init__(
        self,
        config: AppConfig,
        broker: BrokerAdapter,
        *,
        clock: Clock = monotonic,
        sleep: Sleep = asyncio.sleep,
        alerts: AlertDispatcher | None = None,
    ):
        self.config = config
        self.broker = broker
        self.clock = clock
        self.events = EventBus()
        if alerts is not None:
            self.events.subscribe(alerts.handle)

        self.market = MarketDataIngress(
            broker,
            config.instrument.symbol,
            aggregator=CandleAggregator(capacity=config.market_data.candle_capacity),
            freeze=FreezeDetector(freeze_ticks=config.market_data.freeze_ticks),
            atr_period=config.pair_rules.atr_period,
            feed_lost_polls=config.market_data.feed_lost_polls,
        )
        self.approvals = ApprovalRegistry()
        self.admission = AdmissionController(config.admission, self.approvals, clock=clock)
        self.pairs = PairManager(
            broker,
            config.instrument,
            config.pair_rules,
            self.events,
            market=self.market,
            clock=clock,
            sleep=sleep,
        )
        self.router = SignalRouter(self.approvals, self.admission, self.pairs)
        self.started_at = clock()
        self.ticks = 0
        self.feed_lost_at: float | None = None
        self._unreachable_alerted = False

    @property
    def symbol(self) -> str:
        return self.config.instrument.symbol

    async def _subscribe(self) -> None:
        result = await self.broker.subscribe(self.symbol)
        if not result.ok:
            LOGGER.warning("Subscribe to %s failed: %s", self.symbol, result.error)

    async def start(self) -> None:
        await self._subscribe()
        balance = await self.broker.get_balance()
        if not balance.ok:
            LOGGER.warning("Balance unavailable at start: %s", balance.error)
        LOGGER.info(
            "Engine started | symbol=%s | broker=%s | balance=%s",
            self.symbol,
            type(self.broker).__name__,
            balance.value if balance.ok else "n/a",
        )
        self.events.emit(
            EngineEvent(
                kind=EventKind.ENGINE_STARTED,
                detail={
                    "symbol": self.symbol,
                    "broker": type(self.broker).__name__,
                    "balance": balance.value if balance.ok else None,
                },
            )
        )

    async def tick(self) -> TickUpdate | None:
        was_lost = self.market.feed_lost
        missed = self.market.failed_polls
        update = await self.market.poll()
        if update is None:
            if self.market.feed_lost:
                await self._feed_down(was_lost)
            return None
        if was_lost:
            self._feed_up(update, missed)
        self.ticks += 1
        if update.transition is FreezeTransition.FROZEN:
            self.events.emit(EngineEvent(kind=EventKind.MARKET_FROZEN, price=update.quote.mid))
        elif update.transition is FreezeTransition.RESUMED:
            self.events.emit(EngineEvent(kind=EventKind.MARKET_RESUMED, price=update.quote.mid))
        await self.pairs.on_tick(update.quote)
        return update

    async def _feed_down(self, was_lost: bool) -> None:
        now = self.clock()
        failed = self.market.failed_polls
        if not was_lost:
            self.feed_lost_at = now
            self.events.emit(EngineEvent(kind=EventKind.FEED_LOST, detail={"failedPolls": failed}))
        down_for = now - (self.feed_lost_at if self.feed_lost_at is not None else now)
        if not self._unreachable_alerted and down_for >= self.config.market_data.maintenance_alert_seconds:
            self._unreachable_alerted = True
            self.events.emit(
                EngineEvent(kind=EventKind.BROKER_UNREACHABLE, detail={"downSeconds": round(down_for, 1)})
            )
        if failed % self.market.feed_lost_polls == 0:
            LOGGER.info("Resubscribing to %s after %d missed polls", self.symbol, failed)
            await self._subscribe()

    def _feed_up(self, update: TickUpdate, missed: int) -> None:
        now = self.clock()
        down_for = now - (self.feed_lost_at if self.feed_lost_at is not None else now)
        self.feed_lost_at = None
        self._unreachable_alerted = False
        self.events.emit(
            EngineEvent(
                kind=EventKind.FEED_RESTORED,
                price=update.quote.mid,
                detail={"missedPolls": missed, "downSeconds": round(down_for, 1)},
            )
        )

    async def reconcile(self) -> bool:
        return await self.pairs.reconcile()

    async def _every(self, interval: float, step, name: str, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Unhandled %s error", name)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def run(self, stop: asyncio.Event) -> None:
        await self.start()
        await asyncio.gather(
            self._every(self.config.market_data.poll_seconds, self.tick, "tick", stop),
            self._every(self.config.market_data.reconcile_seconds, self.reconcile, "reconcile", stop),
        )
        LOGGER.info("Engine loops stopped")

    def status(self) -> dict[str, Any]:
        quote = self.market.latest
        freeze = self.market.freeze.state()
        return {
            "symbol": self.symbol,
            "uptimeSeconds": round(self.clock() - self.started_at, 1),
            "ticks": self.ticks,
            "quote": None if quote is None else {"bid": quote.bid, "ask": quote.ask, "ts": quote.ts},
            "frozen": freeze.frozen,
            "stagnantTicks": freeze.stagnant_count,
            "feedLost": self.market.feed_lost,
            "failedPolls": self.market.failed_polls,
            "atr": self.market.atr(),
            "approvals": self.approvals.snapshot(),
            "busy": self.admission.is_busy(),
            "pairs": [pair.to_dict() for pair in self.pairs.open_pairs()],
        }
