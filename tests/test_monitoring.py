from __future__ import annotations

import requests

from pairbot.models import Side
from pairbot.monitoring import alerts
from pairbot.monitoring.alerts import AlertConfig, AlertDispatcher, format_event
from pairbot.monitoring.events import EngineEvent, EventBus, EventKind


class _Response:
    def raise_for_status(self) -> None:
        return None


def test_event_bus_keeps_history_and_survives_bad_handler() -> None:
    bus = EventBus(history=2)
    received: list[EventKind] = []

    def broken(_event: EngineEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(lambda event: received.append(event.kind))
    for kind in (EventKind.ENTRY, EventKind.CHECKPOINT1, EventKind.SL_HIT):
        bus.emit(EngineEvent(kind=kind, pair_id="pair-1"))

    assert received == [EventKind.ENTRY, EventKind.CHECKPOINT1, EventKind.SL_HIT]
    assert bus.kinds() == [EventKind.CHECKPOINT1, EventKind.SL_HIT]


def test_event_to_dict_skips_empty_fields() -> None:
    event = EngineEvent(kind=EventKind.SL_HIT, pair_id="pair-1", side=Side.BUY, sl=2011.0, outcome="PROFIT")
    assert event.to_dict() == {
        "kind": "SL_HIT",
        "pairId": "pair-1",
        "side": "BUY",
        "sl": 2011.0,
        "outcome": "PROFIT",
    }


def test_format_event() -> None:
    text = format_event(
        EngineEvent(
            kind=EventKind.TRAIL_ADVANCED,
            pair_id="pair-1",
            side=Side.SELL,
            sl=1989.0,
            price=1984.0,
            detail={"previousSL": 1995.0},
        )
    )
    assert text.splitlines() == [
        "TRAIL ADVANCED",
        "Pair: pair-1",
        "Side: SELL",
        "SL: 1989.00",
        "Price: 1984.00",
        "previousSL: 1995.0",
    ]


def test_dispatcher_without_credentials_sends_nothing(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(alerts.requests, "post", lambda *args, **kwargs: calls.append(args[0]))
    dispatcher = AlertDispatcher(AlertConfig(enabled=True))

    dispatcher.handle(EngineEvent(kind=EventKind.ENTRY))
    dispatcher.send_text("hello")

    assert not dispatcher.configured
    assert calls == []


def test_dispatcher_posts_to_telegram_with_cooldown(monkeypatch) -> None:
    calls: list[dict] = []

    def fake_post(url, json=None, timeout=None):
        calls.append({"url": url, "json": json})
        return _Response()

    monkeypatch.setattr(alerts.requests, "post", fake_post)
    dispatcher = AlertDispatcher(
        AlertConfig(enabled=True, telegram_bot_token="T", telegram_chat_id="C", cooldown_seconds=60)
    )

    event = EngineEvent(kind=EventKind.SL_HIT, pair_id="pair-1", outcome="LOSS")
    dispatcher.handle(event)
    dispatcher.handle(event)

    assert len(calls) == 1
    assert calls[0]["url"] == "https://api.telegram.org/botT/sendMessage"
    assert calls[0]["json"]["chat_id"] == "C"
    assert "STOP-LOSS HIT" in calls[0]["json"]["text"]


def test_dispatcher_swallows_network_errors(monkeypatch) -> None:
    def failing_post(*_args, **_kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(alerts.requests, "post", failing_post)
    dispatcher = AlertDispatcher(AlertConfig(telegram_bot_token="T", telegram_chat_id="C"))

    dispatcher.send_text("hello")


def test_connected_event_carries_balance() -> None:
    text = format_event(
        EngineEvent(kind=EventKind.ENGINE_STARTED, detail={"symbol": "GOLD", "balance": 10000.0})
    )

    assert text.splitlines() == ["BOT CONNECTED", "symbol: GOLD", "balance: 10000.0"]
