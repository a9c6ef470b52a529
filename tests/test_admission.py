from __future__ import annotations

import pytest

from pairbot.clock import ManualClock
from pairbot.config import AdmissionConfig
from pairbot.gating.admission import AdmissionController, RejectReason, SignalIdSet, count_open_in_category
from pairbot.gating.approval import ApprovalRegistry
from pairbot.models import Category, Leg, LegRole, Pair, PairPhase, Side, SignalType
from pairbot.signals.commands import ApprovalUpdate, EntryCmd


def _approve(registry: ApprovalRegistry, signal_type: SignalType, side: Side, value: bool = True) -> None:
    for timeframe in ("3M", "5M"):
        registry.apply(ApprovalUpdate(timeframe=timeframe, type=signal_type, side=side, approval=value))


def _controller(clock: ManualClock, **overrides) -> AdmissionController:
    registry = ApprovalRegistry()
    for signal_type in SignalType:
        for side in Side:
            _approve(registry, signal_type, side)
    return AdmissionController(AdmissionConfig(**overrides), registry, clock=clock)


def _open_pair(category: Category) -> Pair:
    return Pair(
        pair_id=f"pair-{category.value}",
        side=category.side,
        category=category,
        opened_at=0.0,
        entry_price=2000.0,
        lot_per_leg=0.01,
        sl=1992.0,
        internal_sl=1992.0,
        legs={LegRole.PARTIAL: Leg("A", 0.01), LegRole.TRAILING: Leg("B", 0.01)},
    )


def test_approval_registry_needs_both_zones() -> None:
    registry = ApprovalRegistry()
    assert not registry.is_approved(Category.T_BUY)
    registry.apply(ApprovalUpdate("3M", SignalType.T, Side.BUY, True))
    assert not registry.is_approved(Category.T_BUY)
    registry.apply(ApprovalUpdate("5m", SignalType.T, Side.BUY, True))
    assert registry.is_approved(Category.T_BUY)
    assert not registry.is_approved(Category.R_BUY)
    registry.apply(ApprovalUpdate("3M", SignalType.T, Side.BUY, False))
    assert not registry.is_approved(Category.T_BUY)
    assert registry.snapshot()["T_BUY"] == {"3M": False, "5M": True}


def test_approval_registry_rejects_unknown_timeframe() -> None:
    with pytest.raises(ValueError):
        ApprovalRegistry().apply(ApprovalUpdate("1M", SignalType.T, Side.BUY, True))


def test_first_entry_is_admitted_and_sets_busy_lock() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock)

    decision = controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [])

    assert decision.allowed
    assert controller.seen("s1")
    assert controller.is_busy()
    clock.advance(2.0)
    assert not controller.is_busy()


def test_duplicate_signal_id_wins_over_other_rules() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock)
    controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [])

    again = controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [])

    assert not again.allowed
    assert again.reason is RejectReason.DUPLICATE


def test_rapid_fire_rejects_any_category() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock)
    controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [])
    clock.advance(1.0)

    decision = controller.evaluate(EntryCmd(SignalType.R, Side.SELL, "s2"), [])

    assert decision.reason is RejectReason.BUSY


def test_missing_approval_is_rejected_before_quota() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock)
    _approve(controller.approvals, SignalType.T, Side.BUY, value=False)

    decision = controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [_open_pair(Category.T_BUY)])

    assert decision.reason is RejectReason.NO_APPROVAL
    assert decision.message == "Approval zones not satisfied: 3M=False, 5M=False"


def test_quota_counts_only_unmanaged_pairs() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock)
    pair = _open_pair(Category.T_BUY)

    decision = controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [pair])
    assert decision.reason is RejectReason.QUOTA
    assert decision.metadata["openCount"] == 1

    pair.phase = PairPhase.PARTIAL_CLOSED
    pair.partial.ticket = None
    assert count_open_in_category([pair], Category.T_BUY) == 0
    assert controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s2"), [pair]).allowed


def test_cooldown_reports_remaining_minutes() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock)
    assert controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), []).allowed
    clock.advance(600.0)

    decision = controller.evaluate(EntryCmd(SignalType.R, Side.BUY, "s2"), [])

    assert decision.reason is RejectReason.COOLDOWN
    assert decision.message == "Cooldown active for BUY. Try again in 5 min"
    assert decision.metadata["remainingMinutes"] == 5
    assert controller.evaluate(EntryCmd(SignalType.T, Side.SELL, "s3"), []).allowed


def test_cooldown_expires_after_window() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock)
    controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [])
    clock.advance(15 * 60)

    assert controller.evaluate(EntryCmd(SignalType.R, Side.BUY, "s2"), []).allowed


def test_release_restores_state_after_failed_placement() -> None:
    clock = ManualClock(1000.0)
    controller = _controller(clock, side_cooldown_minutes=15.0)
    decision = controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), [])

    controller.release(decision)

    assert not controller.seen("s1")
    assert Side.BUY not in controller.last_admitted_at
    clock.advance(2.0)
    assert controller.evaluate(EntryCmd(SignalType.T, Side.BUY, "s1"), []).allowed


def test_signal_id_set_evicts_oldest() -> None:
    ids = SignalIdSet(capacity=2)
    for signal_id in ("a", "b", "c"):
        ids.add(signal_id)
    assert "a" not in ids
    assert "b" in ids and "c" in ids
    assert len(ids) == 2
