"""Shared fixtures for ledger tests."""

from __future__ import annotations

from decimal import Decimal

import pytest

from crucible import events
from crucible.config import ChallengeConfig
from crucible.ledger import ChallengeLedger
from crucible.models import Account, ChallengeStatus
from crucible.oracle import StaticPriceOracle
from crucible.persistence.db import init_db

# 2025-10-09 12:00:00 UTC
T0 = 1_760_011_200.0

TOKEN_A = "So11111111111111111111111111111111111111112"
TOKEN_B = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _no_event_bus():
    events.reset_event_bus()
    yield
    events.reset_event_bus()


@pytest.fixture
def default_cfg() -> ChallengeConfig:
    return ChallengeConfig(
        max_drawdown_pct=Decimal("35"),
        max_position_pct=Decimal("0.30"),
        cash_buffer_pct=Decimal("0.10"),
        max_trades_per_day=10,
        inactivity_timeout_sec=86400,
    )


@pytest.fixture
def db_engine(tmp_path):
    engine = init_db(f"sqlite:///{tmp_path / 'crucible.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oracle() -> StaticPriceOracle:
    return StaticPriceOracle({TOKEN_A: Decimal("1"), TOKEN_B: Decimal("0.5")})


@pytest.fixture
def ledger(db_engine, oracle, default_cfg, clock) -> ChallengeLedger:
    return ChallengeLedger(db_engine, oracle, default_cfg, clock=clock)


@pytest.fixture
def funded(ledger):
    """User 42 with the $20 tier: $200 balance, $460 target."""
    ledger.grant_account(42, Decimal("200"), Decimal("460"))
    return 42


def make_account(**overrides) -> Account:
    values = dict(
        user_id=1,
        balance=Decimal("200"),
        start_balance=Decimal("200"),
        peak_equity=Decimal("200"),
        target=Decimal("460"),
        status=ChallengeStatus.ACTIVE,
        last_activity_at=T0,
        created_at=T0,
    )
    values.update(overrides)
    return Account(**values)
