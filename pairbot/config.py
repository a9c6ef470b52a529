from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


class InstrumentConfig(BaseModel):
    symbol: str = "GOLD"
    fixed_lot: float = 0.02
    min_lot: float = 0.01
    lot_round: int = 2

    @model_validator(mode="after")
    def validate_values(self) -> "InstrumentConfig":
        self.symbol = str(self.symbol).strip().upper() or "GOLD"
        if self.fixed_lot <= 0:
            raise ValueError("fixed_lot must be > 0")
        if self.min_lot <= 0:
            raise ValueError("min_lot must be > 0")
        if self.lot_round < 0:
            raise ValueError("lot_round must be >= 0")
        return self


class PairRulesConfig(BaseModel):
    sl_distance: float = 8.0
    half_distance: float = 5.0
    tight_sl: float = 5.0
    trail_step: float = 5.0
    atr_period: int = 14
    atr_trigger_multiplier: float = 1.5
    grace_seconds: float = 5.0
    leg_spacing_seconds: float = 0.3

    @model_validator(mode="after")
    def validate_values(self) -> "PairRulesConfig":
        if self.sl_distance <= 0:
            raise ValueError("sl_distance must be > 0")
        if not (0 < self.half_distance < self.sl_distance):
            raise ValueError("half_distance must be in (0, sl_distance)")
        if self.tight_sl <= 0:
            raise ValueError("tight_sl must be > 0")
        if self.trail_step <= 0:
            raise ValueError("trail_step must be > 0")
        if self.atr_period <= 0:
            raise ValueError("atr_period must be > 0")
        if self.atr_trigger_multiplier < 0:
            raise ValueError("atr_trigger_multiplier must be >= 0")
        if self.grace_seconds < 0:
            raise ValueError("grace_seconds must be >= 0")
        if self.leg_spacing_seconds < 0:
            raise ValueError("leg_spacing_seconds must be >= 0")
        return self


class AdmissionConfig(BaseModel):
    max_per_category: int = 1
    side_cooldown_minutes: float = 15.0
    rapid_fire_seconds: float = 2.0
    signal_id_capacity: int = 10_000

    @model_validator(mode="after")
    def validate_values(self) -> "AdmissionConfig":
        if self.max_per_category <= 0:
            raise ValueError("max_per_category must be > 0")
        if self.side_cooldown_minutes < 0:
            raise ValueError("side_cooldown_minutes must be >= 0")
        if self.rapid_fire_seconds < 0:
            raise ValueError("rapid_fire_seconds must be >= 0")
        if self.signal_id_capacity <= 0:
            raise ValueError("signal_id_capacity must be > 0")
        return self


class MarketDataConfig(BaseModel):
    poll_seconds: float = 2.0
    reconcile_seconds: float = 15.0
    freeze_ticks: int = 60
    candle_capacity: int = 400
    feed_lost_polls: int = 8
    maintenance_alert_seconds: float = 1800.0

    @model_validator(mode="after")
    def validate_values(self) -> "MarketDataConfig":
        if self.poll_seconds <= 0:
            raise ValueError("poll_seconds must be > 0")
        if self.reconcile_seconds <= 0:
            raise ValueError("reconcile_seconds must be > 0")
        if self.freeze_ticks <= 0:
            raise ValueError("freeze_ticks must be > 0")
        if self.candle_capacity <= 1:
            raise ValueError("candle_capacity must be > 1")
        if self.feed_lost_polls <= 0:
            raise ValueError("feed_lost_polls must be > 0")
        if self.maintenance_alert_seconds <= 0:
            raise ValueError("maintenance_alert_seconds must be > 0")
        return self


class CapitalConfig(BaseModel):
    demo_base_url: str = "https://demo-api-capital.backend-capital.com/api/v1"
    rate_limit_rps: float = 2.0
    rate_limit_burst: int = 5
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0
    reconnect_short_retries: int = 2
    session_refresh_min_interval_seconds: int = 5
    quote_cache_seconds: float = 1.0
    confirm_attempts: int = 5
    confirm_delay_seconds: float = 0.25


class WebhookConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 5002

    @model_validator(mode="after")
    def validate_port(self) -> "WebhookConfig":
        if not (0 < self.port < 65536):
            raise ValueError("webhook.port must be in 1..65535")
        return self


class MonitoringConfig(BaseModel):
    alerts_enabled: bool = True
    alert_cooldown_seconds: int = 0


class AppConfig(BaseModel):
    instrument: InstrumentConfig = Field(default_factory=InstrumentConfig)
    pair_rules: PairRulesConfig = Field(default_factory=PairRulesConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    capital: CapitalConfig = Field(default_factory=CapitalConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        return AppConfig()
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)


def apply_env_overrides(config: AppConfig) -> AppConfig:
    symbol = (os.getenv("SYMBOL") or "").strip().upper()
    if symbol:
        config.instrument.symbol = symbol
    port = (os.getenv("WEBHOOK_PORT") or "").strip()
    if port:
        config.webhook = WebhookConfig(host=config.webhook.host, port=int(port))
    return config
