"""Data structures for the challenge ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class ChallengeStatus(str, Enum):
    ACTIVE = "active"
    FAILED_DRAWDOWN = "failed_drawdown"
    PASSED = "passed"
    FAILED_INACTIVITY = "failed_inactivity"

    @property
    def is_terminal(self) -> bool:
        return self is not ChallengeStatus.ACTIVE


class RejectReason(str, Enum):
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    BELOW_CASH_BUFFER = "below_cash_buffer"
    POSITION_TOO_LARGE = "position_too_large"
    DAILY_TRADE_CAP_REACHED = "daily_trade_cap_reached"
    TOO_MANY_POSITIONS = "too_many_positions"
    CHALLENGE_NOT_ACTIVE = "challenge_not_active"
    POSITION_NOT_FOUND = "position_not_found"
    PRICE_UNAVAILABLE = "price_unavailable"


def utc_day(ts: float) -> str:
    """Calendar day (UTC) of an epoch timestamp, as YYYY-MM-DD."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class TokenQuote:
    price: Decimal
    symbol: str
    market_cap_usd: Optional[Decimal] = None


def usable_quote(quote: Optional[TokenQuote]) -> bool:
    """Missing quotes and non-positive prices are equally unusable."""
    return quote is not None and quote.price > ZERO


@dataclass(frozen=True)
class Account:
    user_id: int
    balance: Decimal
    start_balance: Decimal
    peak_equity: Decimal
    target: Decimal
    status: ChallengeStatus
    last_activity_at: float
    created_at: float
    bounty: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    trades_today: int = 0
    trade_day: Optional[str] = None  # UTC date trades_today belongs to
    closed_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status is ChallengeStatus.ACTIVE

    def trades_on(self, now: float) -> int:
        """Trade count for the UTC day containing `now`."""
        return self.trades_today if self.trade_day == utc_day(now) else 0


@dataclass(frozen=True)
class Position:
    id: str
    user_id: int
    token_id: str
    symbol: str
    cost_basis_usd: Decimal
    tokens_held: Decimal
    entry_price: Decimal
    opened_at: float

    def unrealized_pnl(self, price: Decimal) -> Decimal:
        return (price - self.entry_price) * self.tokens_held


@dataclass(frozen=True)
class Fill:
    ts: float
    user_id: int
    position_id: str
    token_id: str
    side: str  # "BUY" or "SELL"
    usd: Decimal
    tokens: Decimal
    price: Decimal
    pnl: Decimal = ZERO
    price_fallback: bool = False


@dataclass(frozen=True)
class Evaluation:
    equity: Decimal
    unrealized_pnl: Decimal
    drawdown_pct: Decimal
    peak_equity: Decimal
    status: ChallengeStatus
    transitioned: bool = False


@dataclass(frozen=True)
class Rejection:
    """A rule said no. The account is untouched."""

    reason: RejectReason
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.reason.value}: {self.detail}" if self.detail else self.reason.value


@dataclass(frozen=True)
class OpenResult:
    position: Position
    balance: Decimal
    evaluation: Evaluation


@dataclass(frozen=True)
class CloseResult:
    proceeds: Decimal
    pnl: Decimal
    price: Decimal
    used_fallback_price: bool
    position: Optional[Position]  # None when fully closed
    balance: Decimal
    evaluation: Evaluation


@dataclass(frozen=True)
class AccountSnapshot:
    account: Account
    positions: list[Position] = field(default_factory=list)
    evaluation: Optional[Evaluation] = None
