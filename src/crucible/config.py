"""Configuration loading for the challenge ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class Tier:
    """What a given challenge fee buys."""

    balance: Decimal
    target: Decimal
    bounty: Decimal


DEFAULT_TIERS: dict[int, Tier] = {
    20: Tier(Decimal("200"), Decimal("460"), Decimal("140")),
    30: Tier(Decimal("300"), Decimal("690"), Decimal("210")),
    40: Tier(Decimal("400"), Decimal("920"), Decimal("280")),
    50: Tier(Decimal("500"), Decimal("1150"), Decimal("350")),
}


@dataclass(frozen=True)
class ChallengeConfig:
    # Rules
    max_drawdown_pct: Decimal = Decimal("35")          # from peak equity
    max_position_pct: Decimal = Decimal("0.30")        # of start balance, inclusive
    cash_buffer_pct: Decimal = Decimal("0.10")         # of start balance, must stay in cash
    max_trades_per_day: int = 10                       # opens per UTC day
    max_open_positions: int = 0                        # 0 = unlimited
    inactivity_timeout_sec: int = 7 * 86400

    # Price oracle
    oracle_timeout_sec: float = 6.0

    # Runtime
    sweep_interval_sec: int = 3600
    db_url: str | None = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    tiers: dict[int, Tier] = field(default_factory=lambda: dict(DEFAULT_TIERS))

    def tier_for(self, pay_amount: int) -> Tier | None:
        return self.tiers.get(pay_amount)


def validate_config(cfg: ChallengeConfig) -> None:
    """Validate config values. Raises ValueError with all issues found."""
    errors: list[str] = []

    if not (0 < cfg.max_drawdown_pct <= 100):
        errors.append(f"max_drawdown_pct must be in (0, 100], got {cfg.max_drawdown_pct}")
    if not (0 < cfg.max_position_pct <= 1):
        errors.append(f"max_position_pct must be in (0, 1], got {cfg.max_position_pct}")
    if not (0 <= cfg.cash_buffer_pct < 1):
        errors.append(f"cash_buffer_pct must be in [0, 1), got {cfg.cash_buffer_pct}")
    if cfg.max_trades_per_day <= 0:
        errors.append(f"max_trades_per_day must be > 0, got {cfg.max_trades_per_day}")
    if cfg.max_open_positions < 0:
        errors.append(f"max_open_positions must be >= 0, got {cfg.max_open_positions}")
    if cfg.inactivity_timeout_sec <= 0:
        errors.append(f"inactivity_timeout_sec must be > 0, got {cfg.inactivity_timeout_sec}")
    if cfg.oracle_timeout_sec <= 0:
        errors.append(f"oracle_timeout_sec must be > 0, got {cfg.oracle_timeout_sec}")
    if cfg.sweep_interval_sec < 1:
        errors.append(f"sweep_interval_sec must be >= 1, got {cfg.sweep_interval_sec}")
    if not (0 < cfg.api_port < 65536):
        errors.append(f"api_port must be a valid TCP port, got {cfg.api_port}")

    for pay, tier in cfg.tiers.items():
        if tier.balance <= 0:
            errors.append(f"tier {pay}: balance must be > 0, got {tier.balance}")
        if tier.target <= tier.balance:
            errors.append(
                f"tier {pay}: target ({tier.target}) must be > balance ({tier.balance})"
            )
        if tier.bounty < 0:
            errors.append(f"tier {pay}: bounty must be >= 0, got {tier.bounty}")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))


def _load_tiers(raw: dict[Any, Any] | None) -> dict[int, Tier]:
    if not raw:
        return dict(DEFAULT_TIERS)
    return {
        int(pay): Tier(
            balance=Decimal(str(t["balance"])),
            target=Decimal(str(t["target"])),
            bounty=Decimal(str(t.get("bounty", "0"))),
        )
        for pay, t in raw.items()
    }


def load_crucible_config(raw: dict[str, Any]) -> ChallengeConfig:
    """Load ChallengeConfig from config.yaml's crucible section."""
    cc = (raw or {}).get("crucible", {})
    if not cc:
        return ChallengeConfig()

    cfg = ChallengeConfig(
        max_drawdown_pct=Decimal(str(cc.get("max_drawdown_pct", "35"))),
        max_position_pct=Decimal(str(cc.get("max_position_pct", "0.30"))),
        cash_buffer_pct=Decimal(str(cc.get("cash_buffer_pct", "0.10"))),
        max_trades_per_day=int(cc.get("max_trades_per_day", 10)),
        max_open_positions=int(cc.get("max_open_positions", 0)),
        inactivity_timeout_sec=int(cc.get("inactivity_timeout_sec", 7 * 86400)),
        oracle_timeout_sec=float(cc.get("oracle_timeout_sec", 6.0)),
        sweep_interval_sec=int(cc.get("sweep_interval_sec", 3600)),
        db_url=cc.get("db_url"),
        api_host=cc.get("api_host", "0.0.0.0"),
        api_port=int(cc.get("api_port", 8000)),
        tiers=_load_tiers(cc.get("tiers")),
    )
    validate_config(cfg)
    return cfg
