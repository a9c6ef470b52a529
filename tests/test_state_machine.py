from __future__ import annotations

import pytest

from pairbot.execution import state_machine as sm
from pairbot.execution.sizing import round_lot, split_lot
from pairbot.models import Category, Leg, LegRole, Pair, PairPhase, Side, SignalType


def _pair(side: Side = Side.BUY, entry: float = 2000.0, internal_sl: float | None = None) -> Pair:
    stop = sm.initial_stop(side, entry, 8.0)
    return Pair(
        pair_id="pair-test",
        side=side,
        category=Category.of(SignalType.T, side),
        opened_at=0.0,
        entry_price=entry,
        lot_per_leg=0.01,
        sl=stop,
        internal_sl=stop if internal_sl is None else internal_sl,
        legs={
            LegRole.PARTIAL: Leg(ticket="A", lot=0.01),
            LegRole.TRAILING: Leg(ticket="B", lot=0.01),
        },
    )


def test_split_lot_halves_and_rounds() -> None:
    assert split_lot(0.02, min_lot=0.01) == pytest.approx(0.01)
    assert split_lot(0.04, min_lot=0.01) == pytest.approx(0.02)
    assert split_lot(0.1, min_lot=0.1) is None
    assert split_lot(0.0, min_lot=0.01) is None
    assert round_lot(0.123456, 3) == pytest.approx(0.123)


def test_offsets_are_side_aware() -> None:
    assert sm.offset(Side.BUY, 2000.0, 5.0) == 2005.0
    assert sm.offset(Side.SELL, 2000.0, 5.0) == 1995.0
    assert sm.initial_stop(Side.BUY, 2000.0, 8.0) == 1992.0
    assert sm.initial_stop(Side.SELL, 2000.0, 8.0) == 2008.0


def test_reached_and_stop_hit_include_equality() -> None:
    assert sm.reached(Side.BUY, 2005.0, 2005.0)
    assert not sm.reached(Side.BUY, 2004.99, 2005.0)
    assert sm.reached(Side.SELL, 1995.0, 1995.0)
    assert sm.stop_hit(Side.BUY, 1992.0, 1992.0)
    assert sm.stop_hit(Side.SELL, 2008.5, 2008.0)
    assert not sm.stop_hit(Side.SELL, 2007.9, 2008.0)


def test_trail_candidate_never_below_entry_after_break_even() -> None:
    assert sm.trail_candidate(Side.BUY, 2016.0, 5.0, entry=2000.0, break_even=True) == 2011.0
    assert sm.trail_candidate(Side.BUY, 2003.0, 5.0, entry=2000.0, break_even=True) == 2000.0
    assert sm.trail_candidate(Side.BUY, 2003.0, 5.0, entry=2000.0, break_even=False) == 1998.0
    assert sm.trail_candidate(Side.SELL, 1997.0, 5.0, entry=2000.0, break_even=True) == 2000.0


def test_classify_outcome_requires_stop_strictly_beyond_entry() -> None:
    assert sm.classify_outcome(Side.BUY, 2011.0, 2000.0) is sm.Outcome.PROFIT
    assert sm.classify_outcome(Side.BUY, 2000.0, 2000.0) is sm.Outcome.LOSS
    assert sm.classify_outcome(Side.SELL, 1995.0, 2000.0) is sm.Outcome.PROFIT
    assert sm.classify_outcome(Side.SELL, 2008.0, 2000.0) is sm.Outcome.LOSS


def test_tighten_only_moves_stop_favourably() -> None:
    pair = _pair(Side.BUY)
    assert sm.tighten(pair, 1995.0)
    assert pair.internal_sl == 1995.0
    assert not sm.tighten(pair, 1993.0)
    assert not sm.tighten(pair, 1995.0)
    assert pair.internal_sl == 1995.0

    short = _pair(Side.SELL)
    assert sm.tighten(short, 2003.0)
    assert not sm.tighten(short, 2004.0)
    assert short.internal_sl == 2003.0


def test_phase_transitions_are_forward_only() -> None:
    pair = _pair()
    assert not sm.transition(pair, PairPhase.TRAILING)
    assert sm.transition(pair, PairPhase.PARTIAL_CLOSED)
    assert not sm.transition(pair, PairPhase.OPEN)
    assert not sm.transition(pair, PairPhase.PARTIAL_CLOSED)
    assert sm.transition(pair, PairPhase.BREAK_EVEN)
    assert pair.break_even_active
    assert sm.transition(pair, PairPhase.TRAILING)
    assert not sm.transition(pair, PairPhase.BREAK_EVEN)
    assert pair.partial_closed


def test_mature_requires_partial_closed_and_live_trailing_leg() -> None:
    pair = _pair()
    assert not pair.mature
    pair.partial.ticket = None
    sm.transition(pair, PairPhase.PARTIAL_CLOSED)
    assert pair.mature
    pair.trailing.ticket = None
    assert not pair.mature
    assert pair.all_legs_closed
