from __future__ import annotations

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from pairbot.clock import Clock, monotonic
from pairbot.config import AdmissionConfig
from pairbot.gating.approval import ApprovalRegistry
from pairbot.models import Category, Pair, Side
from pairbot.signals.commands import EntryCmd

LOGGER = logging.getLogger(__name__)


class RejectReason(str, Enum):
    DUPLICATE = "DUPLICATE"
    BUSY = "BUSY"
    NO_APPROVAL = "NO_APPROVAL"
    QUOTA = "QUOTA"
    COOLDOWN = "COOLDOWN"
    INVALID_FORMAT = "INVALID_FORMAT"


@dataclass(slots=True)
class AdmissionDecision:
    allowed: bool
    reason: RejectReason | None = None
    message: str = ""
    metadata: dict[str, float | int | str] = field(default_factory=dict)
    side: Side | None = None
    signal_id: str | None = None
    previous_admitted_at: float | None = None


@dataclass(slots=True)
class AdmissionContext:
    cmd: EntryCmd
    now: float
    pairs: list[Pair]


class SignalIdSet:
    """Recently seen signal ids, oldest evicted past capacity."""

    def __init__(self, capacity: int = 10_000):
        self.capacity = max(1, int(capacity))
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, signal_id: object) -> bool:
        return signal_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, signal_id: str) -> None:
        self._ids[signal_id] = None
        self._ids.move_to_end(signal_id)
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def discard(self, signal_id: str) -> None:
        self._ids.pop(signal_id, None)


def count_open_in_category(pairs: Iterable[Pair], category: Category) -> int:
    return sum(
        1
        for pair in pairs
        if pair.category is category
        and not pair.partial_closed
        and pair.partial.live
        and pair.trailing.live
    )


def _reject(reason: RejectReason, message: str, **metadata: float | int | str) -> AdmissionDecision:
    return AdmissionDecision(allowed=False, reason=reason, message=message, metadata=dict(metadata))


AdmissionRule = Callable[["AdmissionController", AdmissionContext], "AdmissionDecision | None"]


def check_duplicate(controller: "AdmissionController", ctx: AdmissionContext) -> AdmissionDecision | None:
    signal_id = ctx.cmd.signal_id
    if signal_id and signal_id in controller.processed_signal_ids:
        return _reject(RejectReason.DUPLICATE, f"Duplicate signalId {signal_id}")
    return None


def check_busy(controller: "AdmissionController", ctx: AdmissionContext) -> AdmissionDecision | None:
    if controller.is_busy(ctx.now):
        return _reject(RejectReason.BUSY, "Entry in progress")
    return None


def check_approval(controller: "AdmissionController", ctx: AdmissionContext) -> AdmissionDecision | None:
    category = ctx.cmd.category
    if controller.approvals.is_approved(category):
        return None
    zone3 = controller.approvals.zone(category, "3M")
    zone5 = controller.approvals.zone(category, "5M")
    return _reject(
        RejectReason.NO_APPROVAL,
        f"Approval zones not satisfied: 3M={zone3}, 5M={zone5}",
        category=category.value,
    )


def check_quota(controller: "AdmissionController", ctx: AdmissionContext) -> AdmissionDecision | None:
    category = ctx.cmd.category
    open_count = count_open_in_category(ctx.pairs, category)
    if open_count >= controller.config.max_per_category:
        return _reject(
            RejectReason.QUOTA,
            f"Max trades reached for {category.value}",
            category=category.value,
            openCount=open_count,
        )
    return None


def check_cooldown(controller: "AdmissionController", ctx: AdmissionContext) -> AdmissionDecision | None:
    side = ctx.cmd.side
    last = controller.last_admitted_at.get(side)
    if last is None:
        return None
    cooldown = controller.config.side_cooldown_minutes * 60.0
    elapsed = ctx.now - last
    if elapsed >= cooldown:
        return None
    remaining_minutes = math.ceil((cooldown - elapsed) / 60.0)
    return _reject(
        RejectReason.COOLDOWN,
        f"Cooldown active for {side.value}. Try again in {remaining_minutes} min",
        remainingMinutes=remaining_minutes,
    )


DEFAULT_RULES: tuple[AdmissionRule, ...] = (
    check_duplicate,
    check_busy,
    check_approval,
    check_quota,
    check_cooldown,
)


class AdmissionController:
    def __init__(
        self,
        config: AdmissionConfig,
        approvals: ApprovalRegistry,
        *,
        clock: Clock = monotonic,
        rules: tuple[AdmissionRule, ...] = DEFAULT_RULES,
    ):
        self.config = config
        self.approvals = approvals
        self.clock = clock
        self.rules = rules
        self.processed_signal_ids = SignalIdSet(config.signal_id_capacity)
        self.last_admitted_at: dict[Side, float] = {}
        self._busy_until: float | None = None

    def is_busy(self, now: float | None = None) -> bool:
        if self._busy_until is None:
            return False
        current = self.clock() if now is None else now
        if current >= self._busy_until:
            self._busy_until = None
            return False
        return True

    def evaluate(self, cmd: EntryCmd, pairs: Iterable[Pair]) -> AdmissionDecision:
        now = self.clock()
        ctx = AdmissionContext(cmd=cmd, now=now, pairs=list(pairs))
        for rule in self.rules:
            rejection = rule(self, ctx)
            if rejection is not None:
                rejection.side = cmd.side
                rejection.signal_id = cmd.signal_id
                LOGGER.info(
                    "Entry rejected %s %s reason=%s %s",
                    cmd.category.value,
                    cmd.signal_id or "-",
                    rejection.reason.value if rejection.reason else "-",
                    rejection.message,
                )
                return rejection

        previous = self.last_admitted_at.get(cmd.side)
        if cmd.signal_id:
            self.processed_signal_ids.add(cmd.signal_id)
        self.last_admitted_at[cmd.side] = now
        self._busy_until = now + self.config.rapid_fire_seconds
        LOGGER.info("Entry admitted %s signalId=%s", cmd.category.value, cmd.signal_id or "-")
        return AdmissionDecision(
            allowed=True,
            side=cmd.side,
            signal_id=cmd.signal_id,
            previous_admitted_at=previous,
        )

    def release(self, decision: AdmissionDecision) -> None:
        """Undo the bookkeeping of an admitted entry whose placement failed."""
        if not decision.allowed or decision.side is None:
            return
        if decision.signal_id:
            self.processed_signal_ids.discard(decision.signal_id)
        if decision.previous_admitted_at is None:
            self.last_admitted_at.pop(decision.side, None)
        else:
            self.last_admitted_at[decision.side] = decision.previous_admitted_at

    def mark_processed(self, signal_id: str | None) -> None:
        if signal_id:
            self.processed_signal_ids.add(signal_id)

    def seen(self, signal_id: str | None) -> bool:
        return bool(signal_id) and signal_id in self.processed_signal_ids
