from __future__ import annotations

import pytest
from pydantic import ValidationError

from pairbot.config import AppConfig, PairRulesConfig, apply_env_overrides, load_config


def test_missing_file_gives_defaults(tmp_path) -> None:
    config = load_config(tmp_path / "absent.yaml")
    assert config.instrument.symbol == "GOLD"
    assert config.pair_rules.sl_distance == 8.0
    assert config.pair_rules.half_distance == 5.0
    assert config.admission.side_cooldown_minutes == 15.0
    assert config.market_data.freeze_ticks == 60
    assert config.webhook.port == 5002


def test_yaml_overrides_are_validated(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "instrument:\n  symbol: xauusd\n  fixed_lot: 0.04\n"
        "pair_rules:\n  sl_distance: 10\n  half_distance: 6\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.instrument.symbol == "XAUUSD"
    assert config.instrument.fixed_lot == 0.04
    assert config.pair_rules.sl_distance == 10.0
    assert config.pair_rules.trail_step == 5.0


def test_half_distance_must_sit_inside_stop_distance() -> None:
    with pytest.raises(ValidationError):
        PairRulesConfig(sl_distance=5.0, half_distance=5.0)


def test_invalid_port_rejected(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("webhook:\n  port: 70000\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(path)


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("SYMBOL", "xauusd")
    monkeypatch.setenv("WEBHOOK_PORT", "8080")
    config = apply_env_overrides(AppConfig())
    assert config.instrument.symbol == "XAUUSD"
    assert config.webhook.port == 8080


def test_env_overrides_absent(monkeypatch) -> None:
    monkeypatch.delenv("SYMBOL", raising=False)
    monkeypatch.delenv("WEBHOOK_PORT", raising=False)
    config = apply_env_overrides(AppConfig())
    assert config.instrument.symbol == "GOLD"
    assert config.webhook.port == 5002
