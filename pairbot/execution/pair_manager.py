from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pairbot.broker.base import BrokerAdapter, BrokerResult
from pairbot.clock import Clock, monotonic
from pairbot.config import InstrumentConfig, PairRulesConfig
from pairbot.data.indicators import trail_trigger
from pairbot.data.market_data import MarketDataIngress
from pairbot.execution import state_machine as sm
from pairbot.execution.sizing import split_lot
from pairbot.models import (
    Category,
    CloseReason,
    Leg,
    LegRole,
    Pair,
    PairPhase,
    Position,
    Quote,
    Side,
    new_pair_id,
)
from pairbot.monitoring.events import EngineEvent, EventBus, EventKind
from pairbot.signals.commands import EntryCmd

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class PlacementFailed:
    reason: str
    metadata: dict[str, Any] = field(default_factory=dict)


class PairManager:
    """Owns the open pairs and drives each one through its lifecycle.

    Broker failures never escape: a failed close leaves the leg ticket in
    place and the next tick or reconcile cycle retries it.
    """

    def __init__(
        self,
        broker: BrokerAdapter,
        instrument: InstrumentConfig,
        rules: PairRulesConfig,
        events: EventBus,
        *,
        market: MarketDataIngress | None = None,
        clock: Clock = monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.broker = broker
        self.instrument = instrument
        self.rules = rules
        self.events = events
        self.market = market
        self.clock = clock
        self._sleep = sleep
        self.pairs: dict[str, Pair] = {}
        self.pending_tickets: set[str] = set()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @property
    def symbol(self) -> str:
        return self.instrument.symbol

    def owned_tickets(self) -> set[str]:
        owned = set(self.pending_tickets)
        for pair in self.pairs.values():
            owned.update(pair.tickets())
        return owned

    def open_pairs(self) -> list[Pair]:
        return list(self.pairs.values())

    def _emit(self, kind: EventKind, pair: Pair | None = None, **fields: Any) -> None:
        if pair is not None:
            fields.setdefault("pair_id", pair.pair_id)
            fields.setdefault("side", pair.side)
        self.events.emit(EngineEvent(kind=kind, **fields))

    # ------------------------------------------------------------------
    # placement
    # ------------------------------------------------------------------

    async def _rollback(self, tickets: list[str]) -> None:
        for ticket in tickets:
            result = await self.broker.close_position(ticket)
            if not result.ok:
                LOGGER.warning("Rollback close of %s failed: %s", ticket, result.error)

    async def _entry_price(self, side: Side, fill_price: float | None) -> float | None:
        if fill_price is not None:
            return fill_price
        quote: Quote | None = self.market.latest if self.market is not None else None
        if quote is None:
            quote = await self.broker.get_price(self.symbol)
        return quote.entry_for(side) if quote is not None else None

    async def open_pair(self, cmd: EntryCmd) -> Pair | PlacementFailed:
        lot = split_lot(
            self.instrument.fixed_lot,
            min_lot=self.instrument.min_lot,
            decimals=self.instrument.lot_round,
        )
        if lot is None:
            LOGGER.warning("Computed lot too small for %s (fixed_lot=%s)", cmd.category.value, self.instrument.fixed_lot)
            return PlacementFailed("lot below minimum", {"fixed_lot": self.instrument.fixed_lot})

        placed: list[str] = []
        try:
            first = await self.broker.place_market(cmd.side, lot)
            if not first.ok or first.value is None:
                LOGGER.warning("PARTIAL leg placement failed for %s: %s", cmd.category.value, first.error)
                return PlacementFailed("partial leg placement failed", {"error": first.error or ""})
            first_fill = first.value
            placed.append(first_fill.id)
            self.pending_tickets.add(first_fill.id)

            if self.rules.leg_spacing_seconds > 0:
                await self._sleep(self.rules.leg_spacing_seconds)

            second = await self.broker.place_market(cmd.side, lot)
            if not second.ok or second.value is None:
                LOGGER.warning("TRAILING leg placement failed for %s: %s; rolling back", cmd.category.value, second.error)
                await self._rollback(placed)
                return PlacementFailed("trailing leg placement failed", {"error": second.error or ""})
            second_fill = second.value
            placed.append(second_fill.id)
            self.pending_tickets.add(second_fill.id)

            entry = await self._entry_price(cmd.side, first_fill.fill_price)
            if entry is None:
                LOGGER.warning("No entry price available for %s; rolling back", cmd.category.value)
                await self._rollback(placed)
                return PlacementFailed("no entry price available")

            stop = sm.initial_stop(cmd.side, entry, self.rules.sl_distance)
            pair = Pair(
                pair_id=new_pair_id(),
                side=cmd.side,
                category=cmd.category,
                opened_at=self.clock(),
                entry_price=entry,
                lot_per_leg=lot,
                sl=stop,
                internal_sl=stop,
                legs={
                    LegRole.PARTIAL: Leg(ticket=first_fill.id, lot=lot),
                    LegRole.TRAILING: Leg(ticket=second_fill.id, lot=lot),
                },
                signal_id=cmd.signal_id,
            )
            self.pairs[pair.pair_id] = pair
        finally:
            self.pending_tickets.difference_update(placed)

        LOGGER.info(
            "Pair opened %s %s entry=%.2f sl=%.2f lot=%.2fx2 tickets=%s",
            pair.pair_id,
            pair.category.value,
            entry,
            stop,
            lot,
            "/".join(placed),
        )
        self._emit(EventKind.ENTRY, pair, entry=entry, sl=stop, detail={"category": pair.category.value})
        return pair

    # ------------------------------------------------------------------
    # closing
    # ------------------------------------------------------------------

    async def _close_leg(self, pair: Pair, role: LegRole) -> bool:
        leg = pair.legs[role]
        if leg.ticket is None:
            return True
        result: BrokerResult[None] = await self.broker.close_position(leg.ticket)
        if not result.ok:
            LOGGER.warning("Close %s leg %s of %s failed: %s", role.value, leg.ticket, pair.pair_id, result.error)
            return False
        if result.already_closed:
            LOGGER.info("%s leg %s of %s was already closed", role.value, leg.ticket, pair.pair_id)
        leg.ticket = None
        return True

    async def _close_pair(self, pair: Pair, reason: CloseReason) -> bool:
        if pair.close_reason is None:
            pair.close_reason = reason
        closed_all = True
        for role, _leg in pair.live_legs():
            if not await self._close_leg(pair, role):
                closed_all = False
        if closed_all:
            pair.awaiting_final_close = True
        return closed_all

    async def _finish_pending_closes(self) -> None:
        for pair in list(self.pairs.values()):
            if pair.close_reason is not None and not pair.awaiting_final_close:
                await self._close_pair(pair, pair.close_reason)

    async def _close_matching(self, predicate: Callable[[Pair], bool], label: str) -> list[Pair]:
        closed: list[Pair] = []
        for pair in list(self.pairs.values()):
            if pair.awaiting_final_close or not predicate(pair):
                continue
            done = await self._close_pair(pair, CloseReason.CLOSE_SIGNAL)
            closed.append(pair)
            self._emit(
                EventKind.PAIR_CLOSED,
                pair,
                entry=pair.entry_price,
                detail={"trigger": label, "complete": done},
            )
        if not closed:
            LOGGER.info("Close %s: no open pairs", label)
        return closed

    async def close_by_side(self, side: Side) -> list[Pair]:
        return await self._close_matching(lambda pair: pair.side is side, f"{side.value} CLOSE")

    async def close_by_category(self, category: Category) -> list[Pair]:
        return await self._close_matching(
            lambda pair: pair.category is category,
            f"{category.value.replace('_', ' ')} CLOSE",
        )

    # ------------------------------------------------------------------
    # per-tick state machine
    # ------------------------------------------------------------------

    def _eligible(self, pair: Pair, now: float) -> bool:
        return (
            pair.close_reason is None
            and not pair.awaiting_final_close
            and pair.age(now) >= self.rules.grace_seconds
        )

    async def on_tick(self, quote: Quote) -> None:
        if self.market is not None and self.market.frozen:
            return
        await self._finish_pending_closes()

        now = self.clock()
        if any(self._eligible(pair, now) for pair in self.pairs.values()):
            await self.reconcile()

        atr_value = self.market.atr() if self.market is not None else 0.0
        for pair in list(self.pairs.values()):
            if pair.pair_id in self.pairs and self._eligible(pair, self.clock()):
                await self._step(pair, quote, atr_value)
        self.cleanup()

    async def _step(self, pair: Pair, quote: Quote, atr_value: float) -> None:
        current = quote.price_for(pair.side)
        if pair.phase is PairPhase.OPEN:
            changed = await self._pre_partial(pair, current)
        elif pair.phase is PairPhase.PARTIAL_CLOSED and pair.tight_sl_mode:
            changed = self._tight_break_even(pair, current)
        else:
            changed = False
        if not changed and pair.partial_closed:
            self._trail(pair, current, atr_value)
        await self._check_stop(pair, current)

    async def _pre_partial(self, pair: Pair, current: float) -> bool:
        side, entry = pair.side, pair.entry_price
        cp1 = sm.offset(side, entry, self.rules.half_distance)
        cp2 = sm.offset(side, entry, self.rules.sl_distance)
        changed = False

        if pair.tight_sl_mode:
            if sm.reached(side, current, cp1) and pair.partial.live:
                if await self._close_leg(pair, LegRole.PARTIAL):
                    sm.transition(pair, PairPhase.PARTIAL_CLOSED)
                    changed = True
                    LOGGER.info("[%s] tight mode: PARTIAL closed at %.2f, SL kept %.2f", pair.pair_id, current, pair.internal_sl)
                    self._emit(EventKind.PARTIAL_CLOSED, pair, sl=pair.internal_sl, entry=entry, price=current)
            if pair.partial_closed:
                changed = self._tight_break_even(pair, current) or changed
            return changed

        if sm.reached(side, current, cp1):
            if sm.tighten(pair, sm.offset(side, entry, -self.rules.half_distance)):
                changed = True
                LOGGER.info("[%s] CHECKPOINT1 reached, SL moved to %.2f", pair.pair_id, pair.internal_sl)
                self._emit(EventKind.CHECKPOINT1, pair, sl=pair.internal_sl, entry=entry, price=current)

        if sm.reached(side, current, cp2) and pair.partial.live:
            if await self._close_leg(pair, LegRole.PARTIAL):
                sm.transition(pair, PairPhase.BREAK_EVEN)
                if sm.is_not_worse(side, entry, pair.internal_sl):
                    pair.internal_sl = entry
                changed = True
                LOGGER.info("[%s] PARTIAL closed; BE set at %.2f", pair.pair_id, pair.internal_sl)
                self._emit(EventKind.PARTIAL_BREAKEVEN, pair, sl=pair.internal_sl, entry=entry, price=current)
        return changed

    def _tight_break_even(self, pair: Pair, current: float) -> bool:
        cp2 = sm.offset(pair.side, pair.entry_price, self.rules.sl_distance)
        if not sm.reached(pair.side, current, cp2):
            return False
        if not sm.transition(pair, PairPhase.BREAK_EVEN):
            return False
        if sm.is_not_worse(pair.side, pair.entry_price, pair.internal_sl):
            pair.internal_sl = pair.entry_price
        LOGGER.info("[%s] tight mode: break-even at %.2f", pair.pair_id, pair.internal_sl)
        self._emit(EventKind.BREAK_EVEN, pair, sl=pair.internal_sl, entry=pair.entry_price, price=current)
        return True

    def _trail(self, pair: Pair, current: float, atr_value: float) -> None:
        trigger = trail_trigger(
            atr_value,
            multiplier=self.rules.atr_trigger_multiplier,
            trail_step=self.rules.trail_step,
        )
        if sm.favourable_distance(pair.side, current, pair.internal_sl) <= trigger:
            return
        candidate = sm.trail_candidate(
            pair.side,
            current,
            self.rules.trail_step,
            entry=pair.entry_price,
            break_even=pair.break_even_active,
        )
        previous = pair.internal_sl
        if not sm.tighten(pair, candidate):
            return
        sm.transition(pair, PairPhase.TRAILING)
        LOGGER.info("[%s] TRAIL advanced %.2f -> %.2f (price=%.2f)", pair.pair_id, previous, pair.internal_sl, current)
        self._emit(
            EventKind.TRAIL_ADVANCED,
            pair,
            sl=pair.internal_sl,
            entry=pair.entry_price,
            price=current,
            atr=atr_value,
            detail={"previousSL": previous, "trigger": trigger},
        )

    async def _check_stop(self, pair: Pair, current: float) -> None:
        effective = pair.internal_sl if pair.internal_sl is not None else pair.sl
        if not sm.stop_hit(pair.side, current, effective):
            return
        outcome = sm.classify_outcome(pair.side, effective, pair.entry_price)
        pair.metadata["outcome"] = outcome.value
        LOGGER.info(
            "[%s] STOP-LOSS hit at %.2f (effectiveSL=%.2f, outcome=%s)",
            pair.pair_id,
            current,
            effective,
            outcome.value,
        )
        await self._close_pair(pair, CloseReason.SL_HIT)
        self._emit(
            EventKind.SL_HIT,
            pair,
            sl=effective,
            entry=pair.entry_price,
            price=current,
            outcome=outcome.value,
        )

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    def _is_our_symbol(self, position: Position) -> bool:
        return not position.symbol or position.symbol.upper() == self.symbol.upper()

    async def reconcile(self) -> bool:
        """Sync tracked legs with the broker's position list; False when the fetch failed."""
        result = await self.broker.get_positions()
        if not result.ok:
            LOGGER.warning("Reconcile skipped: positions fetch failed: %s", result.error)
            return False
        positions = result.value or []
        by_id = {position.id: position for position in positions}

        owned = self.owned_tickets()
        for position in positions:
            if position.id in owned or not self._is_our_symbol(position):
                continue
            closed = await self.broker.close_position(position.id)
            if closed.ok:
                LOGGER.warning("Closed untracked %s position %s (%s %.2f)", position.symbol, position.id, position.side.value, position.volume)
                self._emit(
                    EventKind.STRANGER_CLOSED,
                    side=position.side,
                    entry=position.open_price,
                    detail={"positionId": position.id, "volume": position.volume},
                )
            else:
                LOGGER.warning("Could not close untracked position %s: %s", position.id, closed.error)

        now = self.clock()
        for pair in list(self.pairs.values()):
            if pair.age(now) < self.rules.grace_seconds:
                continue
            for role, leg in pair.live_legs():
                if leg.ticket in by_id:
                    continue
                missing = leg.ticket
                if not await self._close_leg(pair, role):
                    continue
                LOGGER.info("[%s] %s leg %s missing at broker; marked closed", pair.pair_id, role.value, missing)
                if role is LegRole.PARTIAL:
                    sm.transition(pair, PairPhase.PARTIAL_CLOSED)
                self._emit(EventKind.LEG_MISSING, pair, detail={"leg": role.value, "ticket": missing})

            if pair.all_legs_closed:
                if pair.close_reason is None:
                    pair.close_reason = CloseReason.BROKER_CLOSED
                pair.awaiting_final_close = True
                continue
            self._refresh_entry(pair, by_id)

        self.apply_tight_sl_override()
        self.cleanup()
        return True

    def _refresh_entry(self, pair: Pair, by_id: dict[str, Position]) -> None:
        # entry follows the PARTIAL fill until that leg closes
        if pair.partial_closed or not pair.partial.live:
            return
        position = by_id.get(pair.partial.ticket or "")
        if position is None or position.open_price is None:
            return
        new_entry = position.open_price
        if abs(new_entry - pair.entry_price) < 1e-9:
            return
        previous = pair.entry_price
        pair.entry_price = new_entry
        pair.sl = sm.initial_stop(pair.side, new_entry, self.rules.sl_distance)
        if pair.phase is PairPhase.OPEN and sm.is_not_worse(pair.side, pair.sl, pair.internal_sl):
            pair.internal_sl = pair.sl
        LOGGER.info(
            "[%s] entry refreshed %.2f -> %.2f (sl=%.2f internalSL=%.2f)",
            pair.pair_id,
            previous,
            new_entry,
            pair.sl,
            pair.internal_sl,
        )

    # ------------------------------------------------------------------
    # overrides & housekeeping
    # ------------------------------------------------------------------

    def apply_tight_sl_override(self) -> list[Pair]:
        mature_sides = {
            pair.side
            for pair in self.pairs.values()
            if pair.mature and not pair.awaiting_final_close
        }
        changed: list[Pair] = []
        for pair in self.pairs.values():
            if pair.phase is not PairPhase.OPEN or pair.awaiting_final_close:
                continue
            if pair.side.opposite not in mature_sides:
                continue
            entered = not pair.tight_sl_mode
            pair.tight_sl_mode = True
            desired = sm.offset(pair.side, pair.entry_price, -self.rules.tight_sl)
            tightened = sm.tighten(pair, desired)
            if entered or tightened:
                changed.append(pair)
                LOGGER.info("[%s] tight SL mode, internalSL=%.2f", pair.pair_id, pair.internal_sl)
                self._emit(EventKind.TIGHT_SL_APPLIED, pair, sl=pair.internal_sl, entry=pair.entry_price)
        return changed

    def cleanup(self) -> list[str]:
        now = self.clock()
        removed = [
            pair_id
            for pair_id, pair in self.pairs.items()
            if pair.all_legs_closed and pair.age(now) > self.rules.grace_seconds
        ]
        for pair_id in removed:
            pair = self.pairs.pop(pair_id)
            LOGGER.info(
                "Pair %s removed (reason=%s)",
                pair_id,
                pair.close_reason.value if pair.close_reason else "-",
            )
        return removed
