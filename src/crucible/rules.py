"""Challenge rules — position-size limits, equity, drawdown and pass/fail.

Everything here is pure arithmetic over models; the ledger owns locking,
pricing and persistence.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional, Sequence

from crucible.config import ChallengeConfig
from crucible.models import (
    HUNDRED,
    ZERO,
    Account,
    ChallengeStatus,
    Evaluation,
    Position,
    RejectReason,
    Rejection,
)


def to_amount(value) -> Optional[Decimal]:
    """Parse a user-supplied USD amount / percent. None if not a finite number."""
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def check_active(account: Optional[Account]) -> Optional[Rejection]:
    if account is None:
        return Rejection(RejectReason.CHALLENGE_NOT_ACTIVE, "no challenge for this user")
    if not account.is_active:
        return Rejection(
            RejectReason.CHALLENGE_NOT_ACTIVE, f"challenge is {account.status.value}"
        )
    return None


def check_open(
    account: Optional[Account],
    usd_amount,
    open_positions: int,
    now: float,
    cfg: ChallengeConfig,
) -> Optional[Rejection]:
    """Preconditions for a buy, first failure wins."""
    rejection = check_active(account)
    if rejection:
        return rejection

    amount = to_amount(usd_amount)
    if amount is None or amount <= ZERO:
        return Rejection(RejectReason.INVALID_AMOUNT, f"amount must be > 0, got {usd_amount!r}")

    if amount > account.balance:
        return Rejection(
            RejectReason.INSUFFICIENT_BALANCE,
            f"amount ${amount} > balance ${account.balance}",
        )

    floor = account.start_balance * cfg.cash_buffer_pct
    if account.balance - amount < floor:
        return Rejection(
            RejectReason.BELOW_CASH_BUFFER,
            f"cash after buy ${account.balance - amount} < reserve ${floor}",
        )

    cap = account.start_balance * cfg.max_position_pct
    if amount > cap:
        return Rejection(
            RejectReason.POSITION_TOO_LARGE,
            f"amount ${amount} > max position ${cap}",
        )

    trades = account.trades_on(now)
    if trades >= cfg.max_trades_per_day:
        return Rejection(
            RejectReason.DAILY_TRADE_CAP_REACHED,
            f"{trades}/{cfg.max_trades_per_day} trades today",
        )

    if cfg.max_open_positions and open_positions >= cfg.max_open_positions:
        return Rejection(
            RejectReason.TOO_MANY_POSITIONS,
            f"{open_positions}/{cfg.max_open_positions} positions open",
        )

    return None


def check_close_percent(percent) -> Optional[Rejection]:
    pct = to_amount(percent)
    if pct is None or pct <= ZERO or pct > HUNDRED:
        return Rejection(RejectReason.INVALID_AMOUNT, f"percent must be in (0, 100], got {percent!r}")
    return None


def drawdown_pct(peak_equity: Decimal, equity: Decimal) -> Decimal:
    """Percent decline of equity from the high-water mark, floored at 0."""
    if peak_equity <= ZERO:
        return ZERO
    return max(ZERO, (peak_equity - equity) / peak_equity * HUNDRED)


def mark_to_market(
    account: Account,
    positions: Sequence[Position],
    live_prices: Mapping[str, Decimal],
) -> tuple[Decimal, Decimal]:
    """Return (equity, unrealized_pnl). Missing quotes fall back to entry price."""
    unrealized = ZERO
    committed = ZERO
    for p in positions:
        price = live_prices.get(p.token_id)
        if price is None or price <= ZERO:
            price = p.entry_price
        unrealized += p.unrealized_pnl(price)
        committed += p.cost_basis_usd
    return account.balance + committed + unrealized, unrealized


def next_status(
    account: Account,
    equity: Decimal,
    dd_pct: Decimal,
    now: float,
    cfg: ChallengeConfig,
) -> ChallengeStatus:
    """Fixed priority: drawdown, then target, then inactivity. Only from ACTIVE."""
    if not account.is_active:
        return account.status
    if dd_pct >= cfg.max_drawdown_pct:
        return ChallengeStatus.FAILED_DRAWDOWN
    if equity >= account.target:
        return ChallengeStatus.PASSED
    if now - account.last_activity_at > cfg.inactivity_timeout_sec:
        return ChallengeStatus.FAILED_INACTIVITY
    return ChallengeStatus.ACTIVE


def evaluate_account(
    account: Account,
    positions: Sequence[Position],
    live_prices: Mapping[str, Decimal],
    now: float,
    cfg: ChallengeConfig,
) -> tuple[Account, Evaluation]:
    """Mark the account to market, ratchet the peak and apply transitions.

    Terminal accounts come back unchanged; their evaluation is display-only.
    """
    equity, unrealized = mark_to_market(account, positions, live_prices)

    if not account.is_active:
        dd = drawdown_pct(account.peak_equity, equity)
        return account, Evaluation(
            equity=equity,
            unrealized_pnl=unrealized,
            drawdown_pct=dd,
            peak_equity=account.peak_equity,
            status=account.status,
        )

    peak = max(account.peak_equity, equity)
    dd = drawdown_pct(peak, equity)
    status = next_status(account, equity, dd, now, cfg)
    transitioned = status is not account.status

    updated = replace(
        account,
        peak_equity=peak,
        status=status,
        closed_at=now if transitioned else account.closed_at,
    )
    return updated, Evaluation(
        equity=equity,
        unrealized_pnl=unrealized,
        drawdown_pct=dd,
        peak_equity=peak,
        status=status,
        transitioned=transitioned,
    )
