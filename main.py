from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from pairbot.broker.base import BrokerAdapter
from pairbot.broker.capital_adapter import CapitalBrokerAdapter
from pairbot.broker.capital_client import CapitalClient
from pairbot.broker.paper import PaperBroker
from pairbot.config import AppConfig, apply_env_overrides, load_config
from pairbot.engine import Engine
from pairbot.monitoring.alerts import AlertConfig, AlertDispatcher
from pairbot.webhook import create_app

LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Paired-leg gold execution engine")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", action="store_true", help="Simulated fills; live prices when broker credentials are set")
    mode_group.add_argument("--paper", action="store_true", help="Place orders on the Capital.com DEMO API")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_client(config: AppConfig, paper_mode: bool) -> CapitalClient | None:
    api_key = os.getenv("BROKER_TOKEN")
    identifier = os.getenv("BROKER_IDENTIFIER")
    password = os.getenv("BROKER_PASSWORD")

    if paper_mode and not (api_key and identifier and password):
        raise RuntimeError("Paper mode requires BROKER_TOKEN, BROKER_IDENTIFIER and BROKER_PASSWORD in .env")
    if not (api_key and identifier and password):
        LOGGER.warning("Credentials missing. Running without live market data.")
        return None
    return CapitalClient(
        base_url=os.getenv("BROKER_BASE_URL", config.capital.demo_base_url),
        api_key=api_key,
        identifier=identifier,
        password=password,
        account_id=os.getenv("BROKER_ACCOUNT_ID"),
        rate_limit_rps=config.capital.rate_limit_rps,
        rate_limit_burst=config.capital.rate_limit_burst,
        request_max_attempts=config.capital.request_max_attempts,
        backoff_base_seconds=config.capital.backoff_base_seconds,
        backoff_max_seconds=config.capital.backoff_max_seconds,
        reconnect_short_retries=config.capital.reconnect_short_retries,
        session_refresh_min_interval_seconds=config.capital.session_refresh_min_interval_seconds,
        confirm_attempts=config.capital.confirm_attempts,
        confirm_delay_seconds=config.capital.confirm_delay_seconds,
    )


def build_broker(config: AppConfig, paper_mode: bool) -> BrokerAdapter:
    symbol = config.instrument.symbol
    client = build_client(config, paper_mode)
    live = (
        CapitalBrokerAdapter(client, symbol, quote_cache_seconds=config.capital.quote_cache_seconds)
        if client is not None
        else None
    )
    if paper_mode and live is not None:
        return live
    LOGGER.info("Dry-run: simulated fills for %s (live prices=%s)", symbol, live is not None)
    return PaperBroker(symbol, price_feed=live)


def build_alert_dispatcher(config: AppConfig) -> AlertDispatcher:
    return AlertDispatcher(
        AlertConfig(
            enabled=config.monitoring.alerts_enabled,
            telegram_bot_token=os.getenv("NOTIFY_TOKEN"),
            telegram_chat_id=os.getenv("NOTIFY_CHAT"),
            cooldown_seconds=config.monitoring.alert_cooldown_seconds,
        )
    )


async def serve(engine: Engine, config: AppConfig, log_level: str) -> None:
    stop = asyncio.Event()
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(engine),
            host=config.webhook.host,
            port=config.webhook.port,
            log_level=log_level.lower(),
            lifespan="off",
        )
    )
    engine_task = asyncio.create_task(engine.run(stop))
    try:
        # uvicorn owns SIGINT/SIGTERM while serving and returns on either
        await server.serve()
    finally:
        stop.set()
        await engine_task
        await engine.broker.close()
        LOGGER.info("Engine stopped.")


def run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    paper_mode = bool(args.paper)
    load_dotenv()
    log_level = args.log_level or os.getenv("LOG_LEVEL", "INFO")
    setup_logging(log_level)

    root = Path(__file__).resolve().parent
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = root / config_path
    config = apply_env_overrides(load_config(config_path))

    broker = build_broker(config, paper_mode)
    alerts = build_alert_dispatcher(config)
    engine = Engine(config, broker, alerts=alerts)
    mode = "paper" if paper_mode else "dry-run"
    LOGGER.info(
        "Starting engine | mode=%s | symbol=%s | webhook=%s:%d",
        mode,
        config.instrument.symbol,
        config.webhook.host,
        config.webhook.port,
    )
    try:
        asyncio.run(serve(engine, config, log_level))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted.")


if __name__ == "__main__":
    run()
