from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from pairbot.execution.pair_manager import PairManager, PlacementFailed
from pairbot.gating.admission import AdmissionController, RejectReason
from pairbot.gating.approval import APPROVAL_TIMEFRAMES, ApprovalRegistry
from pairbot.models import Category, Side, SignalType
from pairbot.signals.commands import ApprovalUpdate, CloseCmd, EntryCmd

LOGGER = logging.getLogger(__name__)

Command = Union[EntryCmd, CloseCmd, ApprovalUpdate]

REJECT_STATUS = {
    RejectReason.INVALID_FORMAT: 400,
    RejectReason.NO_APPROVAL: 403,
    RejectReason.DUPLICATE: 429,
    RejectReason.BUSY: 429,
    RejectReason.QUOTA: 429,
    RejectReason.COOLDOWN: 429,
}


class SignalFormatError(ValueError):
    """Payload is missing a signal or the signal text is not recognised."""


@dataclass(slots=True)
class RouteResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value)


def _signal_id(payload: dict[str, Any]) -> str | None:
    raw = payload.get("signalId")
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def parse_signal(payload: Any) -> Command:
    """Translate a webhook payload into a command.

    Recognised forms (case-insensitive, whitespace separated)::

        T BUY ENTRY          -> EntryCmd
        BUY CLOSE            -> CloseCmd for every pair on that side
        T BUY CLOSE          -> CloseCmd for one category
        3M ZONE T BUY        -> ApprovalUpdate (uses ``approval``)
    """
    if not isinstance(payload, dict):
        raise SignalFormatError("Payload must be a JSON object")
    signal = payload.get("signal")
    if not isinstance(signal, str) or not signal.strip():
        raise SignalFormatError("Missing 'signal' in payload")

    tokens = signal.strip().upper().split()
    signal_id = _signal_id(payload)
    types = {item.value for item in SignalType}
    sides = {item.value for item in Side}

    if len(tokens) == 3 and tokens[0] in types and tokens[1] in sides and tokens[2] == "ENTRY":
        return EntryCmd(type=SignalType(tokens[0]), side=Side(tokens[1]), signal_id=signal_id)
    if len(tokens) == 2 and tokens[0] in sides and tokens[1] == "CLOSE":
        return CloseCmd(side=Side(tokens[0]), signal_id=signal_id)
    if len(tokens) == 3 and tokens[0] in types and tokens[1] in sides and tokens[2] == "CLOSE":
        side = Side(tokens[1])
        return CloseCmd(side=side, category=Category.of(SignalType(tokens[0]), side), signal_id=signal_id)
    if (
        len(tokens) == 4
        and tokens[0] in APPROVAL_TIMEFRAMES
        and tokens[1] == "ZONE"
        and tokens[2] in types
        and tokens[3] in sides
    ):
        return ApprovalUpdate(
            timeframe=tokens[0],
            type=SignalType(tokens[2]),
            side=Side(tokens[3]),
            approval=_as_bool(payload.get("approval", False)),
            signal_id=signal_id,
        )
    raise SignalFormatError("Invalid signal format")


class SignalRouter:
    """Dispatches parsed webhook commands and maps outcomes to HTTP statuses."""

    def __init__(self, approvals: ApprovalRegistry, admission: AdmissionController, pairs: PairManager):
        self.approvals = approvals
        self.admission = admission
        self.pairs = pairs

    async def handle(self, payload: Any) -> RouteResult:
        try:
            command = parse_signal(payload)
        except SignalFormatError as exc:
            LOGGER.info("Webhook rejected: %s", exc)
            return RouteResult(400, {"ok": False, "error": str(exc), "reason": RejectReason.INVALID_FORMAT.value})

        try:
            if isinstance(command, ApprovalUpdate):
                return self._handle_approval(command)
            if isinstance(command, CloseCmd):
                return await self._handle_close(command)
            return await self._handle_entry(command)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Webhook handler failed for %s", payload)
            return RouteResult(500, {"ok": False, "error": str(exc)})

    def _handle_approval(self, update: ApprovalUpdate) -> RouteResult:
        self.approvals.apply(update)
        return RouteResult(
            200,
            {
                "ok": True,
                "updated": {
                    "category": update.category.value,
                    "timeframe": update.timeframe,
                    "approval": update.approval,
                },
            },
        )

    async def _handle_close(self, cmd: CloseCmd) -> RouteResult:
        if self.admission.seen(cmd.signal_id):
            LOGGER.info("Duplicate close ignored (signalId=%s)", cmd.signal_id)
            return RouteResult(
                REJECT_STATUS[RejectReason.DUPLICATE],
                {"ok": False, "error": "Duplicate ignored (idempotent)", "reason": RejectReason.DUPLICATE.value},
            )
        self.admission.mark_processed(cmd.signal_id)
        if cmd.category is not None:
            closed = await self.pairs.close_by_category(cmd.category)
        else:
            closed = await self.pairs.close_by_side(cmd.side)
        return RouteResult(200, {"ok": True, "closed": len(closed)})

    async def _handle_entry(self, cmd: EntryCmd) -> RouteResult:
        decision = self.admission.evaluate(cmd, self.pairs.open_pairs())
        if not decision.allowed:
            reason = decision.reason or RejectReason.INVALID_FORMAT
            body: dict[str, Any] = {"ok": False, "error": decision.message, "reason": reason.value}
            if decision.metadata:
                body.update(decision.metadata)
            return RouteResult(REJECT_STATUS[reason], body)

        result = await self.pairs.open_pair(cmd)
        if isinstance(result, PlacementFailed):
            self.admission.release(decision)
            return RouteResult(500, {"ok": False, "error": "Entry failed", "detail": result.reason})
        return RouteResult(200, {"ok": True, "pair": result.to_dict()})
