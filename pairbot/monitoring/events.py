from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pairbot.models import Side

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    ENTRY = "ENTRY"
    CHECKPOINT1 = "CHECKPOINT1"
    PARTIAL_BREAKEVEN = "PARTIAL_BREAKEVEN"
    PARTIAL_CLOSED = "PARTIAL_CLOSED"
    BREAK_EVEN = "BREAK_EVEN"
    TRAIL_ADVANCED = "TRAIL_ADVANCED"
    SL_HIT = "SL_HIT"
    TIGHT_SL_APPLIED = "TIGHT_SL_APPLIED"
    PAIR_CLOSED = "PAIR_CLOSED"
    STRANGER_CLOSED = "STRANGER_CLOSED"
    LEG_MISSING = "LEG_MISSING"
    MARKET_FROZEN = "MARKET_FROZEN"
    MARKET_RESUMED = "MARKET_RESUMED"
    FEED_LOST = "FEED_LOST"
    FEED_RESTORED = "FEED_RESTORED"
    BROKER_UNREACHABLE = "BROKER_UNREACHABLE"
    ENGINE_STARTED = "ENGINE_STARTED"


@dataclass(slots=True)
class EngineEvent:
    kind: EventKind
    pair_id: str | None = None
    side: Side | None = None
    sl: float | None = None
    entry: float | None = None
    price: float | None = None
    atr: float | None = None
    outcome: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value}
        if self.pair_id is not None:
            payload["pairId"] = self.pair_id
        if self.side is not None:
            payload["side"] = self.side.value
        for key in ("sl", "entry", "price", "atr", "outcome"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.detail:
            payload["detail"] = dict(self.detail)
        return payload


EventHandler = Callable[[EngineEvent], None]


class EventBus:
    """Synchronous fan-out of engine events with a short in-memory history."""

    def __init__(self, history: int = 200):
        self._handlers: list[EventHandler] = []
        self.recent: deque[EngineEvent] = deque(maxlen=max(1, history))

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def emit(self, event: EngineEvent) -> None:
        self.recent.append(event)
        LOGGER.info("EVENT %s", event.to_dict())
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Event handler failed for %s: %s", event.kind.value, exc)

    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self.recent]
