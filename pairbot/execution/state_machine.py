"""Price geometry and phase transitions for a paired position.

All helpers are pure and side-aware: "favourable" means up for a BUY pair and
down for a SELL pair. ``PairManager`` combines them per tick and performs the
broker calls; nothing here talks to a broker.
"""

from __future__ import annotations

from enum import Enum

from pairbot.models import Pair, PairPhase, Side


class Outcome(str, Enum):
    PROFIT = "PROFIT"
    LOSS = "LOSS"


# phase -> phases it may move to
TRANSITIONS: dict[PairPhase, frozenset[PairPhase]] = {
    PairPhase.OPEN: frozenset({PairPhase.PARTIAL_CLOSED, PairPhase.BREAK_EVEN}),
    PairPhase.PARTIAL_CLOSED: frozenset({PairPhase.BREAK_EVEN}),
    PairPhase.BREAK_EVEN: frozenset({PairPhase.TRAILING}),
    PairPhase.TRAILING: frozenset(),
}


def can_transition(current: PairPhase, target: PairPhase) -> bool:
    return current is target or target in TRANSITIONS[current]


def transition(pair: Pair, target: PairPhase) -> bool:
    """Move ``pair`` to ``target`` if allowed; returns whether the phase changed."""
    if pair.phase is target or not can_transition(pair.phase, target):
        return False
    pair.phase = target
    return True


def offset(side: Side, price: float, distance: float) -> float:
    """``price`` moved ``distance`` in the favourable direction for ``side``."""
    return price + side.sign * distance


def is_better(side: Side, candidate: float, current: float) -> bool:
    return (candidate - current) * side.sign > 0


def is_not_worse(side: Side, candidate: float, current: float) -> bool:
    return (candidate - current) * side.sign >= 0


def favourable_distance(side: Side, price: float, reference: float) -> float:
    return (price - reference) * side.sign


def reached(side: Side, price: float, level: float) -> bool:
    return favourable_distance(side, price, level) >= 0


def stop_hit(side: Side, price: float, stop: float) -> bool:
    return favourable_distance(side, price, stop) <= 0


def initial_stop(side: Side, entry: float, sl_distance: float) -> float:
    return offset(side, entry, -sl_distance)


def trail_candidate(side: Side, price: float, step: float, *, entry: float, break_even: bool) -> float:
    candidate = offset(side, price, -step)
    if break_even and not is_not_worse(side, candidate, entry):
        return entry
    return candidate


def classify_outcome(side: Side, stop: float, entry: float) -> Outcome:
    return Outcome.PROFIT if is_better(side, stop, entry) else Outcome.LOSS


def tighten(pair: Pair, proposed: float) -> bool:
    """Set ``internal_sl`` to ``proposed`` only if strictly more favourable."""
    if not is_better(pair.side, proposed, pair.internal_sl):
        return False
    pair.internal_sl = proposed
    return True
