from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1


class SignalType(str, Enum):
    T = "T"
    R = "R"


class Category(str, Enum):
    T_BUY = "T_BUY"
    T_SELL = "T_SELL"
    R_BUY = "R_BUY"
    R_SELL = "R_SELL"

    @classmethod
    def of(cls, signal_type: SignalType, side: Side) -> "Category":
        return cls(f"{signal_type.value}_{side.value}")

    @property
    def side(self) -> Side:
        return Side(self.value.split("_", 1)[1])


class LegRole(str, Enum):
    PARTIAL = "PARTIAL"
    TRAILING = "TRAILING"


class PairPhase(str, Enum):
    OPEN = "OPEN"
    PARTIAL_CLOSED = "PARTIAL_CLOSED"
    BREAK_EVEN = "BREAK_EVEN"
    TRAILING = "TRAILING"


class CloseReason(str, Enum):
    SL_HIT = "SL_HIT"
    CLOSE_SIGNAL = "CLOSE_SIGNAL"
    BROKER_CLOSED = "BROKER_CLOSED"


@dataclass(slots=True)
class Quote:
    bid: float
    ask: float
    ts: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    def price_for(self, side: Side) -> float:
        # longs exit on the bid, shorts on the ask
        return self.bid if side is Side.BUY else self.ask

    def entry_for(self, side: Side) -> float:
        return self.ask if side is Side.BUY else self.bid


@dataclass(slots=True)
class Position:
    id: str
    symbol: str
    side: Side
    volume: float
    open_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    open_time: str | None = None


@dataclass(slots=True)
class Fill:
    id: str
    fill_price: float | None = None


@dataclass(slots=True)
class Leg:
    ticket: str | None
    lot: float

    @property
    def live(self) -> bool:
        return self.ticket is not None


def new_pair_id() -> str:
    return f"pair-{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class Pair:
    pair_id: str
    side: Side
    category: Category
    opened_at: float
    entry_price: float
    lot_per_leg: float
    sl: float
    internal_sl: float
    legs: dict[LegRole, Leg]
    signal_id: str | None = None
    phase: PairPhase = PairPhase.OPEN
    tight_sl_mode: bool = False
    awaiting_final_close: bool = False
    close_reason: CloseReason | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def partial_closed(self) -> bool:
        return self.phase is not PairPhase.OPEN

    @property
    def break_even_active(self) -> bool:
        return self.phase in (PairPhase.BREAK_EVEN, PairPhase.TRAILING)

    @property
    def partial(self) -> Leg:
        return self.legs[LegRole.PARTIAL]

    @property
    def trailing(self) -> Leg:
        return self.legs[LegRole.TRAILING]

    def live_legs(self) -> list[tuple[LegRole, Leg]]:
        return [(role, leg) for role, leg in self.legs.items() if leg.live]

    def tickets(self) -> set[str]:
        return {leg.ticket for leg in self.legs.values() if leg.ticket is not None}

    @property
    def all_legs_closed(self) -> bool:
        return not any(leg.live for leg in self.legs.values())

    @property
    def mature(self) -> bool:
        return self.partial_closed and self.trailing.live

    def age(self, now: float) -> float:
        return now - self.opened_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "pairId": self.pair_id,
            "side": self.side.value,
            "category": self.category.value,
            "signalId": self.signal_id,
            "entryPrice": self.entry_price,
            "lotPerLeg": self.lot_per_leg,
            "sl": self.sl,
            "internalSL": self.internal_sl,
            "phase": self.phase.value,
            "partialClosed": self.partial_closed,
            "breakEvenActive": self.break_even_active,
            "tightSLMode": self.tight_sl_mode,
            "awaitingFinalClose": self.awaiting_final_close,
            "legs": {
                role.value: {"ticket": leg.ticket, "lot": leg.lot}
                for role, leg in self.legs.items()
            },
        }
