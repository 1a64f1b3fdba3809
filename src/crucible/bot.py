"""Entry point: ledger API, inactivity sweep and notification dispatcher."""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import yaml
from dotenv import load_dotenv

from crucible.config import ChallengeConfig, load_crucible_config
from crucible.events import EventType, consume, init_event_bus
from crucible.ledger import ChallengeLedger
from crucible.oracle import JupiterDexScreenerOracle
from crucible.persistence.db import init_db

log = logging.getLogger("crucible.bot")

LOG_FORMAT = "%(asctime)s │ %(name)-18s │ %(message)s"


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Crucible prop-challenge ledger")
    parser.add_argument(
        "--config", type=Path, default=Path("config.yaml"), help="Path to YAML config file"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "debug", "info", "warning", "error"],
        help="Root log level (default: INFO)",
    )
    return parser.parse_args(argv)


def _setup_logging(level_str: str) -> None:
    level = getattr(logging, level_str.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / f"crucible_{datetime.now():%Y-%m-%d_%H%M%S}.log")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(fh)

    for noisy in ("httpx", "httpcore", "urllib3", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def load_config(path: Path) -> ChallengeConfig:
    """YAML file, then CRUCIBLE_* environment overrides."""
    raw = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    cfg = load_crucible_config(raw)

    if os.getenv("CRUCIBLE_DB_URL"):
        cfg = replace(cfg, db_url=os.getenv("CRUCIBLE_DB_URL"))
    if os.getenv("CRUCIBLE_API_PORT"):
        cfg = replace(cfg, api_port=int(os.getenv("CRUCIBLE_API_PORT")))
    return cfg


async def _sweep_loop(ledger: ChallengeLedger, interval_sec: int) -> None:
    """Catch accounts nobody has touched recently."""
    while True:
        try:
            await asyncio.to_thread(ledger.sweep_inactive)
        except Exception as e:
            log.error("SWEEP │ failed: %s", e)
        await asyncio.sleep(interval_sec)


async def _event_dispatcher() -> None:
    """Log notifications. The chat layer subscribes to the same bus."""
    while True:
        event = await consume()
        if event.type is EventType.STATUS_CHANGED:
            log.info(
                "NOTIFY │ user=%s status=%s equity=$%.2f",
                event.data["user_id"], event.data["new_status"], event.data["equity"],
            )
        else:
            log.debug("EVENT │ %s user=%s", event.type.value, event.user_id)


async def _run_all(ledger: ChallengeLedger, cfg: ChallengeConfig) -> None:
    init_event_bus()

    from crucible.api import create_app
    import uvicorn
    api_app = create_app(ledger)
    api_config = uvicorn.Config(api_app, host=cfg.api_host, port=cfg.api_port, log_level="warning")
    api_server = uvicorn.Server(api_config)

    log.info("API │ listening on %s:%d", cfg.api_host, cfg.api_port)
    await asyncio.gather(
        _sweep_loop(ledger, cfg.sweep_interval_sec),
        _event_dispatcher(),
        api_server.serve(),
    )


def main(argv=None):
    args = _parse_args(argv)
    load_dotenv()
    _setup_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ValueError as e:
        log.error("CONFIG │ %s", e)
        sys.exit(2)

    db_engine = init_db(cfg.db_url)
    oracle = JupiterDexScreenerOracle(timeout_sec=cfg.oracle_timeout_sec)
    ledger = ChallengeLedger(db_engine, oracle, cfg)
    log.info(
        "INIT │ max_dd=%s%% max_pos=%s buffer=%s trades/day=%d inactivity=%ds",
        cfg.max_drawdown_pct, cfg.max_position_pct, cfg.cash_buffer_pct,
        cfg.max_trades_per_day, cfg.inactivity_timeout_sec,
    )

    try:
        asyncio.run(_run_all(ledger, cfg))
    except KeyboardInterrupt:
        log.info("SHUTDOWN │ user interrupt")
        sys.exit(0)


if __name__ == "__main__":
    main()
