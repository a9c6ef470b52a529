from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import requests

from pairbot.monitoring.events import EngineEvent, EventKind

LOGGER = logging.getLogger(__name__)

_TITLES = {
    EventKind.ENTRY: "PAIR OPENED",
    EventKind.CHECKPOINT1: "Checkpoint 1",
    EventKind.PARTIAL_BREAKEVEN: "PARTIAL CLOSED + BREAK-EVEN SET",
    EventKind.PARTIAL_CLOSED: "PARTIAL CLOSED",
    EventKind.BREAK_EVEN: "BREAK-EVEN SET",
    EventKind.TRAIL_ADVANCED: "TRAIL ADVANCED",
    EventKind.SL_HIT: "STOP-LOSS HIT",
    EventKind.TIGHT_SL_APPLIED: "TIGHT SL APPLIED",
    EventKind.PAIR_CLOSED: "PAIR CLOSED",
    EventKind.STRANGER_CLOSED: "UNTRACKED POSITION CLOSED",
    EventKind.LEG_MISSING: "LEG MISSING AT BROKER",
    EventKind.MARKET_FROZEN: "MARKET FROZEN",
    EventKind.MARKET_RESUMED: "MARKET RESUMED",
    EventKind.FEED_LOST: "FEED LOST",
    EventKind.FEED_RESTORED: "FEED RESTORED",
    EventKind.BROKER_UNREACHABLE: "BROKER CONNECTION ALERT",
    EventKind.ENGINE_STARTED: "BOT CONNECTED",
}


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 0


def format_event(event: EngineEvent) -> str:
    lines = [_TITLES.get(event.kind, event.kind.value)]
    if event.pair_id:
        lines.append(f"Pair: {event.pair_id}")
    if event.side is not None:
        lines.append(f"Side: {event.side.value}")
    if event.outcome:
        lines.append(f"Outcome: {event.outcome}")
    for label, value in (("Entry", event.entry), ("SL", event.sl), ("Price", event.price), ("ATR", event.atr)):
        if value is not None:
            lines.append(f"{label}: {value:.2f}")
    for key, value in event.detail.items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


class AlertDispatcher:
    def __init__(self, config: AlertConfig):
        self.config = config
        self._last_sent_ts: dict[str, float] = {}
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def configured(self) -> bool:
        return bool((self.config.telegram_bot_token or "").strip() and (self.config.telegram_chat_id or "").strip())

    def _allow(self, key: str) -> bool:
        if self.config.cooldown_seconds <= 0:
            return True
        now = time.monotonic()
        prev = self._last_sent_ts.get(key)
        if prev is not None and (now - prev) < self.config.cooldown_seconds:
            return False
        self._last_sent_ts[key] = now
        return True

    def handle(self, event: EngineEvent) -> None:
        """EventBus handler; delivery runs in a worker thread when a loop is running."""
        if not self.config.enabled or not self.configured:
            return
        key = f"{event.kind.value}:{event.pair_id or '-'}"
        if not self._allow(key):
            return
        text = format_event(event)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.send_text(text)
            return
        task = loop.create_task(asyncio.to_thread(self.send_text, text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def send_text(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        try:
            response = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Telegram alert failed: %s", exc)
