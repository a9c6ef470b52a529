from __future__ import annotations

from fastapi.testclient import TestClient

from pairbot.broker.paper import PaperBroker
from pairbot.clock import ManualClock
from pairbot.config import AppConfig, PairRulesConfig
from pairbot.engine import Engine
from pairbot.webhook import create_app


def _client() -> tuple[TestClient, Engine, PaperBroker]:
    clock = ManualClock(1000.0)
    broker = PaperBroker("GOLD")
    broker.set_quote(2000.0, 2000.2, clock())
    engine = Engine(AppConfig(pair_rules=PairRulesConfig(leg_spacing_seconds=0.0)), broker, clock=clock)
    return TestClient(create_app(engine)), engine, broker


def test_health_is_plain_ok() -> None:
    client, _engine, _broker = _client()
    response = client.get("/_health")
    assert response.status_code == 200
    assert response.text == "OK"


def test_non_json_body_is_bad_request() -> None:
    client, _engine, _broker = _client()
    response = client.post("/webhook", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_missing_signal_is_bad_request() -> None:
    client, _engine, _broker = _client()
    response = client.post("/webhook", json={"signalId": "x"})
    assert response.status_code == 400
    assert response.json()["error"] == "Missing 'signal' in payload"


def test_entry_without_approval_is_forbidden() -> None:
    client, _engine, broker = _client()
    response = client.post("/webhook", json={"signal": "T BUY ENTRY", "signalId": "s1"})
    assert response.status_code == 403
    assert response.json()["reason"] == "NO_APPROVAL"
    assert broker.positions == {}


def test_approval_then_entry_then_close() -> None:
    client, engine, broker = _client()
    for timeframe in ("3M", "5M"):
        response = client.post("/webhook", json={"signal": f"{timeframe} ZONE T BUY", "approval": True})
        assert response.status_code == 200
        assert response.json()["updated"]["approval"] is True

    entry = client.post("/webhook", json={"signal": "T BUY ENTRY", "signalId": "s1"})
    assert entry.status_code == 200
    pair = entry.json()["pair"]
    assert pair["side"] == "BUY"
    assert pair["entryPrice"] == 2000.2
    assert pair["sl"] == 2000.2 - 8.0
    assert len(broker.positions) == 2

    close = client.post("/webhook", json={"signal": "BUY CLOSE", "signalId": "c1"})
    assert close.status_code == 200
    assert close.json()["closed"] == 1
    assert broker.positions == {}

    again = client.post("/webhook", json={"signal": "BUY CLOSE", "signalId": "c1"})
    assert again.status_code == 429
    assert again.json()["reason"] == "DUPLICATE"


def test_status_endpoint() -> None:
    client, _engine, _broker = _client()
    response = client.get("/status")
    assert response.status_code == 200
    body = response.json()
    assert body["symbol"] == "GOLD"
    assert body["pairs"] == []
    assert set(body["approvals"]) == {"T_BUY", "T_SELL", "R_BUY", "R_SELL"}
