"""Challenge ledger — per-user account state and rule enforcement.

Each mutating operation follows the same shape:

  1. read a snapshot without the lock and reject early on cheap rules,
  2. fetch prices from the oracle (never while holding the account lock),
  3. take the per-account lock and one DB transaction, reload, re-check,
     apply the rules to the stored state (a transition there ends the
     challenge and refuses the trade), apply every change, evaluate, write,
  4. emit notifications once the transaction has committed.

Rule violations come back as `Rejection` values with the account untouched.
Database errors propagate.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Iterable, Optional, Union

from sqlalchemy.engine import Engine as SAEngine

from crucible import rules
from crucible.config import ChallengeConfig
from crucible.events import EventType, emit
from crucible.models import (
    HUNDRED,
    ZERO,
    Account,
    AccountSnapshot,
    ChallengeStatus,
    CloseResult,
    Evaluation,
    Fill,
    OpenResult,
    Position,
    RejectReason,
    Rejection,
    TokenQuote,
    usable_quote,
    utc_day,
)
from crucible.oracle import PriceOracle
from crucible.persistence import store

log = logging.getLogger("crucible.ledger")

ORACLE_WORKERS = 8


class ChallengeLedger:
    def __init__(
        self,
        db_engine: SAEngine,
        oracle: PriceOracle,
        cfg: ChallengeConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db_engine
        self._oracle = oracle
        self.cfg = cfg or ChallengeConfig()
        self._clock = clock
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._oracle_pool = ThreadPoolExecutor(
            max_workers=ORACLE_WORKERS, thread_name_prefix="crucible-oracle"
        )

    # ── Locking / pricing ──

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def _quote(self, token_id: str) -> Optional[TokenQuote]:
        try:
            return self._oracle.get_price(token_id)
        except Exception as e:
            log.warning("ORACLE_ERROR │ token=%s: %s", token_id, e)
            return None

    def _marks(self, token_ids: Iterable[str]) -> dict[str, Decimal]:
        """Live prices for the given tokens; tokens without a usable quote are left out.

        Quotes are fetched in parallel on the oracle pool.
        """
        tokens = list(set(token_ids))
        if len(tokens) > 1:
            quotes = list(self._oracle_pool.map(self._quote, tokens))
        else:
            quotes = [self._quote(t) for t in tokens]
        return {
            token_id: quote.price
            for token_id, quote in zip(tokens, quotes)
            if usable_quote(quote)
        }

    def _snapshot(self, user_id: int) -> tuple[Optional[Account], list[Position]]:
        with self._db.connect() as conn:
            account = store.load_account(conn, user_id)
            positions = store.load_positions(conn, user_id) if account else []
        return account, positions

    def _notify_transition(self, account: Account, ev: Evaluation) -> None:
        if not ev.transitioned:
            return
        log.info(
            "STATUS │ user=%s → %s equity=$%.2f dd=%.2f%%",
            account.user_id, ev.status.value, ev.equity, ev.drawdown_pct,
        )
        emit(
            EventType.STATUS_CHANGED,
            {
                "user_id": account.user_id,
                "new_status": ev.status.value,
                "equity": float(ev.equity),
            },
            user_id=account.user_id,
        )

    # ── Account creation ──

    def grant_account(
        self,
        user_id: int,
        start_balance,
        target,
        bounty=ZERO,
    ) -> Union[Account, Rejection]:
        """Create a fresh challenge, replacing any prior account and positions."""
        balance = rules.to_amount(start_balance)
        goal = rules.to_amount(target)
        payout = rules.to_amount(bounty)
        if balance is None or balance <= ZERO:
            return Rejection(RejectReason.INVALID_AMOUNT, f"start balance must be > 0, got {start_balance!r}")
        if goal is None or goal <= ZERO:
            return Rejection(RejectReason.INVALID_AMOUNT, f"target must be > 0, got {target!r}")
        if payout is None or payout < ZERO:
            return Rejection(RejectReason.INVALID_AMOUNT, f"bounty must be >= 0, got {bounty!r}")

        now = self._clock()
        account = Account(
            user_id=user_id,
            balance=balance,
            start_balance=balance,
            peak_equity=balance,
            target=goal,
            status=ChallengeStatus.ACTIVE,
            last_activity_at=now,
            created_at=now,
            bounty=payout,
        )
        with self._lock_for(user_id):
            with self._db.begin() as conn:
                store.replace_account(conn, account)

        log.info("GRANT │ user=%s balance=$%s target=$%s", user_id, balance, goal)
        emit(
            EventType.ACCOUNT_GRANTED,
            {"user_id": user_id, "start_balance": float(balance), "target": float(goal)},
            user_id=user_id,
        )
        return account

    def grant_tier(self, user_id: int, pay_amount) -> Union[Account, Rejection]:
        """Grant the challenge a payment of `pay_amount` USD buys."""
        amount = rules.to_amount(pay_amount)
        tier = None
        if amount is not None and amount == amount.to_integral_value():
            tier = self.cfg.tier_for(int(amount))
        if tier is None:
            return Rejection(
                RejectReason.INVALID_AMOUNT,
                f"no tier for payment {pay_amount!r} (tiers: {sorted(self.cfg.tiers)})",
            )
        return self.grant_account(user_id, tier.balance, tier.target, tier.bounty)

    # ── Trading ──

    def _settle(
        self,
        conn,
        account: Account,
        positions: list[Position],
        marks: dict[str, Decimal],
        now: float,
    ) -> tuple[Account, Evaluation]:
        """Apply the rules to the stored state before a trade changes it.

        A transition found here is written and the trade must not run.
        Otherwise the returned account carries the ratcheted peak.
        """
        account, ev = rules.evaluate_account(account, positions, marks, now, self.cfg)
        if ev.transitioned:
            store.update_account(conn, account)
        return account, ev

    def _refuse_settled(self, account: Account, ev: Evaluation) -> Rejection:
        self._notify_transition(account, ev)
        return rules.check_active(account)

    def open_position(self, user_id: int, token_id: str, usd_amount) -> Union[OpenResult, Rejection]:
        """Buy `usd_amount` of `token_id` at the oracle price."""
        now = self._clock()
        account, positions = self._snapshot(user_id)
        rejection = rules.check_open(account, usd_amount, len(positions), now, self.cfg)
        if rejection:
            log.info("OPEN_REJECTED │ user=%s token=%s %s", user_id, token_id, rejection)
            return rejection

        quote = self._quote(token_id)
        if not usable_quote(quote):
            log.info("OPEN_REJECTED │ user=%s token=%s no price", user_id, token_id)
            return Rejection(RejectReason.PRICE_UNAVAILABLE, f"no price for {token_id}")
        marks = self._marks(p.token_id for p in positions if p.token_id != token_id)
        marks[token_id] = quote.price

        amount = rules.to_amount(usd_amount)
        with self._lock_for(user_id):
            with self._db.begin() as conn:
                account = store.load_account(conn, user_id, for_update=True)
                positions = store.load_positions(conn, user_id) if account else []
                rejection = rules.check_open(account, amount, len(positions), now, self.cfg)
                if rejection:
                    log.info("OPEN_REJECTED │ user=%s token=%s %s", user_id, token_id, rejection)
                    return rejection
                account, settled = self._settle(conn, account, positions, marks, now)
                if not settled.transitioned:
                    account, result = self._apply_open(
                        conn, account, positions, token_id, quote, amount, marks, now
                    )

        if settled.transitioned:
            rejection = self._refuse_settled(account, settled)
            log.info("OPEN_REJECTED │ user=%s token=%s %s", user_id, token_id, rejection)
            return rejection

        position = result.position
        log.info(
            "OPEN │ user=%s %s usd=$%s price=%s tokens=%s balance=$%s",
            user_id, position.symbol, amount, quote.price, position.tokens_held, account.balance,
        )
        emit(
            EventType.POSITION_OPENED,
            {
                "user_id": user_id,
                "position_id": position.id,
                "token_id": token_id,
                "symbol": position.symbol,
                "usd": float(amount),
                "price": float(quote.price),
                "balance": float(account.balance),
            },
            user_id=user_id,
        )
        self._notify_transition(account, result.evaluation)
        return result

    def _apply_open(
        self,
        conn,
        account: Account,
        positions: list[Position],
        token_id: str,
        quote: TokenQuote,
        amount: Decimal,
        marks: dict[str, Decimal],
        now: float,
    ) -> tuple[Account, OpenResult]:
        tokens = amount / quote.price
        position = Position(
            id=uuid.uuid4().hex,
            user_id=account.user_id,
            token_id=token_id,
            symbol=quote.symbol,
            cost_basis_usd=amount,
            tokens_held=tokens,
            entry_price=quote.price,
            opened_at=now,
        )
        account = replace(
            account,
            balance=account.balance - amount,
            trades_today=account.trades_on(now) + 1,
            trade_day=utc_day(now),
            last_activity_at=now,
        )
        account, ev = rules.evaluate_account(
            account, positions + [position], marks, now, self.cfg
        )
        store.insert_position(conn, position)
        store.update_account(conn, account)
        store.insert_fill(conn, Fill(
            ts=now,
            user_id=account.user_id,
            position_id=position.id,
            token_id=token_id,
            side="BUY",
            usd=amount,
            tokens=tokens,
            price=quote.price,
        ))
        return account, OpenResult(position=position, balance=account.balance, evaluation=ev)

    def close_position(self, user_id: int, position_id: str, percent) -> Union[CloseResult, Rejection]:
        """Sell `percent` (0, 100] of a position at the oracle price, entry price if none."""
        now = self._clock()
        account, positions = self._snapshot(user_id)
        rejection = rules.check_active(account) or rules.check_close_percent(percent)
        if rejection:
            return rejection
        position = next((p for p in positions if p.id == position_id), None)
        if position is None:
            return Rejection(RejectReason.POSITION_NOT_FOUND, f"no open position {position_id}")

        quote = self._quote(position.token_id)
        used_fallback = not usable_quote(quote)
        marks = self._marks(p.token_id for p in positions if p.token_id != position.token_id)
        if not used_fallback:
            marks[position.token_id] = quote.price

        pct = rules.to_amount(percent)
        with self._lock_for(user_id):
            with self._db.begin() as conn:
                account = store.load_account(conn, user_id, for_update=True)
                rejection = rules.check_active(account)
                if rejection:
                    return rejection
                position = store.load_position(conn, user_id, position_id)
                if position is None:
                    return Rejection(RejectReason.POSITION_NOT_FOUND, f"no open position {position_id}")
                account, settled = self._settle(
                    conn, account, store.load_positions(conn, user_id), marks, now
                )
                if not settled.transitioned:
                    price = position.entry_price if used_fallback else quote.price
                    account, result = self._apply_close(
                        conn, account, position, pct, price, used_fallback, marks, now
                    )

        if settled.transitioned:
            rejection = self._refuse_settled(account, settled)
            log.info("CLOSE_REJECTED │ user=%s position=%s %s", user_id, position_id, rejection)
            return rejection

        if used_fallback:
            log.warning(
                "CLOSE_FALLBACK_PRICE │ user=%s token=%s using entry=%s",
                user_id, position.token_id, result.price,
            )
        log.info(
            "CLOSE │ user=%s %s pct=%s price=%s proceeds=$%s pnl=$%s balance=$%s",
            user_id, position.symbol, pct, result.price, result.proceeds, result.pnl, account.balance,
        )
        emit(
            EventType.POSITION_CLOSED,
            {
                "user_id": user_id,
                "position_id": position.id,
                "token_id": position.token_id,
                "percent": float(pct),
                "proceeds": float(result.proceeds),
                "pnl": float(result.pnl),
                "price_fallback": used_fallback,
                "balance": float(account.balance),
            },
            user_id=user_id,
        )
        self._notify_transition(account, result.evaluation)
        return result

    def _apply_close(
        self,
        conn,
        account: Account,
        position: Position,
        pct: Decimal,
        price: Decimal,
        used_fallback: bool,
        marks: dict[str, Decimal],
        now: float,
    ) -> tuple[Account, CloseResult]:
        marks = {**marks, position.token_id: price}
        if pct == HUNDRED:
            tokens_sold = position.tokens_held
            cost_sold = position.cost_basis_usd
        else:
            tokens_sold = position.tokens_held * pct / HUNDRED
            cost_sold = position.cost_basis_usd * pct / HUNDRED
        remaining_tokens = position.tokens_held - tokens_sold
        remaining_cost = position.cost_basis_usd - cost_sold

        proceeds = tokens_sold * price
        pnl = proceeds - cost_sold

        if remaining_tokens > ZERO:
            remaining = replace(
                position,
                tokens_held=remaining_tokens,
                cost_basis_usd=remaining_cost,
            )
            store.update_position(conn, remaining)
        else:
            remaining = None
            store.delete_position(conn, position.id)

        account = replace(
            account,
            balance=account.balance + proceeds,
            realized_pnl=account.realized_pnl + pnl,
            last_activity_at=now,
        )
        open_positions = store.load_positions(conn, account.user_id)
        account, ev = rules.evaluate_account(account, open_positions, marks, now, self.cfg)
        store.update_account(conn, account)
        store.insert_fill(conn, Fill(
            ts=now,
            user_id=account.user_id,
            position_id=position.id,
            token_id=position.token_id,
            side="SELL",
            usd=proceeds,
            tokens=tokens_sold,
            price=price,
            pnl=pnl,
            price_fallback=used_fallback,
        ))
        return account, CloseResult(
            proceeds=proceeds,
            pnl=pnl,
            price=price,
            used_fallback_price=used_fallback,
            position=remaining,
            balance=account.balance,
            evaluation=ev,
        )

    # ── Evaluation ──

    def evaluate(self, user_id: int, now: float | None = None, touch: bool = False) -> Optional[AccountSnapshot]:
        """Mark to market and apply pass/fail rules. None if the user has no account.

        `touch=True` is a user refresh: activity is recorded after the rules
        ran, so a user coming back after the inactivity window still fails.
        """
        now = self._clock() if now is None else now
        account, positions = self._snapshot(user_id)
        if account is None:
            return None
        marks = self._marks(p.token_id for p in positions)

        with self._lock_for(user_id):
            with self._db.begin() as conn:
                before = store.load_account(conn, user_id, for_update=True)
                positions = store.load_positions(conn, user_id)
                account, ev = rules.evaluate_account(before, positions, marks, now, self.cfg)
                if touch and account.is_active:
                    account = replace(account, last_activity_at=now)
                if account != before:
                    store.update_account(conn, account)

        self._notify_transition(account, ev)
        return AccountSnapshot(account=account, positions=positions, evaluation=ev)

    def sweep_inactive(self, now: float | None = None) -> list[int]:
        """Evaluate every active account. Returns users whose status changed."""
        now = self._clock() if now is None else now
        with self._db.connect() as conn:
            user_ids = store.active_user_ids(conn)

        changed = []
        for user_id in user_ids:
            snap = self.evaluate(user_id, now=now)
            if snap is not None and snap.evaluation.transitioned:
                changed.append(user_id)

        log.info("SWEEP │ checked=%d transitioned=%d", len(user_ids), len(changed))
        return changed

    # ── Reads ──

    def get_account(self, user_id: int) -> Optional[Account]:
        account, _ = self._snapshot(user_id)
        return account

    def get_positions(self, user_id: int) -> list[Position]:
        _, positions = self._snapshot(user_id)
        return positions

    def get_fills(self, user_id: int, limit: int = 100) -> list[Fill]:
        with self._db.connect() as conn:
            return store.load_fills(conn, user_id, limit)
