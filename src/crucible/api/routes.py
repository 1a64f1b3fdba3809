"""REST endpoints — thin wrapper the chat layer and payment intake call into.

Handlers are plain `def`: the ledger does blocking DB and oracle I/O, so
FastAPI runs them in its thread pool.
"""

from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from crucible.models import (
    Account,
    Evaluation,
    Fill,
    Position,
    RejectReason,
    Rejection,
)

if TYPE_CHECKING:
    from crucible.ledger import ChallengeLedger

_REJECTION_STATUS = {
    RejectReason.INVALID_AMOUNT: 422,
    RejectReason.POSITION_NOT_FOUND: 404,
    RejectReason.PRICE_UNAVAILABLE: 503,
}


class GrantRequest(BaseModel):
    """Either a tier payment or explicit balance/target."""

    pay_amount: Optional[int] = Field(default=None, description="Fee paid; looked up in the tier table")
    start_balance: Optional[Union[float, str]] = Field(default=None, description="Virtual USD balance")
    target: Optional[Union[float, str]] = Field(default=None, description="Equity that passes the challenge")
    bounty: Union[float, str] = Field(default=0, description="Payout on pass")


class OpenRequest(BaseModel):
    token_id: str = Field(min_length=1, description="Token contract address")
    usd_amount: Any = Field(description="USD to commit")


class CloseRequest(BaseModel):
    percent: Any = Field(default=100, description="Percent of the position to sell, (0, 100]")


def _account_dict(account: Account) -> dict:
    d = asdict(account)
    for k, v in d.items():
        if isinstance(v, Decimal):
            d[k] = float(v)
    d["status"] = account.status.value
    return d


def _position_dict(position: Position) -> dict:
    return {
        "id": position.id,
        "token_id": position.token_id,
        "symbol": position.symbol,
        "cost_basis_usd": float(position.cost_basis_usd),
        "tokens_held": float(position.tokens_held),
        "entry_price": float(position.entry_price),
        "opened_at": position.opened_at,
    }


def _evaluation_dict(ev: Evaluation) -> dict:
    return {
        "equity": float(ev.equity),
        "unrealized_pnl": float(ev.unrealized_pnl),
        "drawdown_pct": float(ev.drawdown_pct),
        "peak_equity": float(ev.peak_equity),
        "status": ev.status.value,
        "transitioned": ev.transitioned,
    }


def _fill_dict(fill: Fill) -> dict:
    return {
        "ts": fill.ts,
        "position_id": fill.position_id,
        "token_id": fill.token_id,
        "side": fill.side,
        "usd": float(fill.usd),
        "tokens": float(fill.tokens),
        "price": float(fill.price),
        "pnl": float(fill.pnl),
        "price_fallback": fill.price_fallback,
    }


def _raise_no_account():
    raise HTTPException(status_code=404, detail={"reason": "no_account", "detail": ""})


def _raise_rejection(rejection: Rejection, ledger: "ChallengeLedger", user_id: int):
    if (
        rejection.reason is RejectReason.CHALLENGE_NOT_ACTIVE
        and ledger.get_account(user_id) is None
    ):
        _raise_no_account()
    raise HTTPException(
        status_code=_REJECTION_STATUS.get(rejection.reason, 409),
        detail={"reason": rejection.reason.value, "detail": rejection.detail},
    )


def create_router(ledger: "ChallengeLedger") -> APIRouter:
    router = APIRouter()

    @router.get("/config/rules")
    def rule_config():
        cfg = ledger.cfg
        return {
            "max_drawdown_pct": float(cfg.max_drawdown_pct),
            "max_position_pct": float(cfg.max_position_pct),
            "cash_buffer_pct": float(cfg.cash_buffer_pct),
            "max_trades_per_day": cfg.max_trades_per_day,
            "max_open_positions": cfg.max_open_positions,
            "inactivity_timeout_sec": cfg.inactivity_timeout_sec,
            "tiers": {
                str(pay): {
                    "balance": float(t.balance),
                    "target": float(t.target),
                    "bounty": float(t.bounty),
                }
                for pay, t in sorted(cfg.tiers.items())
            },
        }

    @router.post("/accounts/{user_id}/grant")
    def grant(user_id: int, body: GrantRequest):
        if body.pay_amount is not None:
            result = ledger.grant_tier(user_id, body.pay_amount)
        elif body.start_balance is not None and body.target is not None:
            result = ledger.grant_account(user_id, body.start_balance, body.target, body.bounty)
        else:
            raise HTTPException(
                status_code=422,
                detail={"reason": RejectReason.INVALID_AMOUNT.value,
                        "detail": "pay_amount or start_balance+target required"},
            )
        if isinstance(result, Rejection):
            _raise_rejection(result, ledger, user_id)
        return {"account": _account_dict(result)}

    @router.get("/accounts/{user_id}")
    def account(user_id: int):
        """Refresh: marks to market, applies rules, records activity."""
        snap = ledger.evaluate(user_id, touch=True)
        if snap is None:
            _raise_no_account()
        return {
            "account": _account_dict(snap.account),
            "positions": [_position_dict(p) for p in snap.positions],
            "evaluation": _evaluation_dict(snap.evaluation),
        }

    @router.get("/accounts/{user_id}/positions")
    def positions(user_id: int):
        return [_position_dict(p) for p in ledger.get_positions(user_id)]

    @router.get("/accounts/{user_id}/fills")
    def fills(user_id: int, limit: int = 100):
        return [_fill_dict(f) for f in ledger.get_fills(user_id, limit)]

    @router.post("/accounts/{user_id}/positions")
    def open_position(user_id: int, body: OpenRequest):
        result = ledger.open_position(user_id, body.token_id, body.usd_amount)
        if isinstance(result, Rejection):
            _raise_rejection(result, ledger, user_id)
        return {
            "position": _position_dict(result.position),
            "balance": float(result.balance),
            "evaluation": _evaluation_dict(result.evaluation),
        }

    @router.post("/accounts/{user_id}/positions/{position_id}/close")
    def close_position(user_id: int, position_id: str, body: CloseRequest):
        result = ledger.close_position(user_id, position_id, body.percent)
        if isinstance(result, Rejection):
            _raise_rejection(result, ledger, user_id)
        return {
            "proceeds": float(result.proceeds),
            "pnl": float(result.pnl),
            "price": float(result.price),
            "price_fallback": result.used_fallback_price,
            "position": _position_dict(result.position) if result.position else None,
            "balance": float(result.balance),
            "evaluation": _evaluation_dict(result.evaluation),
        }

    return router
