"""Tests for ChallengeLedger — open/close/evaluate against a real SQLite database."""

import threading
from dataclasses import replace
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from conftest import TOKEN_A, TOKEN_B
from crucible.events import EventType
from crucible.ledger import ChallengeLedger
from crucible.models import (
    Account,
    ChallengeStatus,
    CloseResult,
    OpenResult,
    RejectReason,
    Rejection,
    TokenQuote,
)
from crucible.persistence import store

ZERO = Decimal("0")


def _conserved(ledger, user_id) -> bool:
    acct = ledger.get_account(user_id)
    committed = sum((p.cost_basis_usd for p in ledger.get_positions(user_id)), ZERO)
    return acct.balance + committed == acct.start_balance + acct.realized_pnl


class TestGrant:
    def test_fresh_account(self, ledger, clock):
        acct = ledger.grant_account(7, Decimal("300"), Decimal("690"), Decimal("210"))
        assert isinstance(acct, Account)
        stored = ledger.get_account(7)
        assert stored == acct
        assert stored.balance == stored.start_balance == stored.peak_equity == Decimal("300")
        assert stored.status == ChallengeStatus.ACTIVE
        assert stored.last_activity_at == clock.now

    def test_regrant_replaces_positions_and_status(self, ledger, oracle, funded):
        ledger.open_position(funded, TOKEN_A, 50)
        oracle.set_price(TOKEN_A, Decimal("10"))
        ledger.evaluate(funded)
        assert ledger.get_account(funded).status == ChallengeStatus.PASSED

        ledger.grant_account(funded, Decimal("500"), Decimal("1150"))
        acct = ledger.get_account(funded)
        assert acct.status == ChallengeStatus.ACTIVE
        assert acct.balance == Decimal("500")
        assert acct.realized_pnl == ZERO
        assert ledger.get_positions(funded) == []

    def test_invalid_grant(self, ledger):
        assert ledger.grant_account(7, 0, 100).reason == RejectReason.INVALID_AMOUNT
        assert ledger.grant_account(7, 100, "x").reason == RejectReason.INVALID_AMOUNT
        assert ledger.get_account(7) is None

    def test_tier_grant(self, ledger):
        acct = ledger.grant_tier(9, 30)
        assert acct.start_balance == Decimal("300")
        assert acct.target == Decimal("690")
        assert acct.bounty == Decimal("210")

    def test_unknown_tier(self, ledger):
        r = ledger.grant_tier(9, 25)
        assert isinstance(r, Rejection)
        assert r.reason == RejectReason.INVALID_AMOUNT
        assert ledger.get_account(9) is None


class TestOpenPosition:
    def test_success(self, ledger, funded, clock):
        clock.advance(60)
        result = ledger.open_position(funded, TOKEN_A, 60)
        assert isinstance(result, OpenResult)
        assert result.position.tokens_held == Decimal("60")
        assert result.position.entry_price == Decimal("1")
        assert result.balance == Decimal("140")

        acct = ledger.get_account(funded)
        assert acct.balance == Decimal("140")
        assert acct.trades_on(clock.now) == 1
        assert acct.last_activity_at == clock.now
        assert ledger.get_positions(funded) == [result.position]

        fills = ledger.get_fills(funded)
        assert len(fills) == 1
        assert fills[0].side == "BUY"
        assert fills[0].usd == Decimal("60")

    def test_position_cap_boundary(self, ledger, funded):
        r = ledger.open_position(funded, TOKEN_A, 61)
        assert isinstance(r, Rejection)
        assert r.reason == RejectReason.POSITION_TOO_LARGE
        assert isinstance(ledger.open_position(funded, TOKEN_A, 60), OpenResult)

    def test_rejection_leaves_account_untouched(self, ledger, funded, clock):
        before = ledger.get_account(funded)
        clock.advance(3600)
        for amount in (-1, "abc", 250, 190, 61):
            assert isinstance(ledger.open_position(funded, TOKEN_A, amount), Rejection)
        assert ledger.get_account(funded) == before
        assert ledger.get_positions(funded) == []
        assert ledger.get_fills(funded) == []

    def test_rejected_call_skips_oracle(self, db_engine, default_cfg, clock):
        oracle = MagicMock()
        ledger = ChallengeLedger(db_engine, oracle, default_cfg, clock=clock)
        ledger.grant_account(1, 200, 460)
        ledger.open_position(1, TOKEN_A, 61)
        oracle.get_price.assert_not_called()

    def test_price_unavailable_is_atomic(self, ledger, oracle, funded):
        oracle.set_price(TOKEN_A, None)
        before = ledger.get_account(funded)
        r = ledger.open_position(funded, TOKEN_A, 50)
        assert r.reason == RejectReason.PRICE_UNAVAILABLE
        assert ledger.get_account(funded) == before
        assert ledger.get_positions(funded) == []

    def test_non_positive_price_is_unavailable(self, ledger, oracle, funded):
        oracle.set_price(TOKEN_A, Decimal("0"))
        r = ledger.open_position(funded, TOKEN_A, 50)
        assert r.reason == RejectReason.PRICE_UNAVAILABLE

    def test_oracle_exception_is_unavailable(self, db_engine, default_cfg, clock):
        oracle = MagicMock()
        oracle.get_price.side_effect = TimeoutError("slow provider")
        ledger = ChallengeLedger(db_engine, oracle, default_cfg, clock=clock)
        ledger.grant_account(1, 200, 460)
        r = ledger.open_position(1, TOKEN_A, 50)
        assert r.reason == RejectReason.PRICE_UNAVAILABLE

    def test_no_account(self, ledger):
        r = ledger.open_position(404, TOKEN_A, 10)
        assert r.reason == RejectReason.CHALLENGE_NOT_ACTIVE

    def test_daily_cap_resets_at_utc_midnight(self, db_engine, oracle, default_cfg, clock):
        cfg = replace(default_cfg, max_trades_per_day=2)
        ledger = ChallengeLedger(db_engine, oracle, cfg, clock=clock)
        ledger.grant_account(1, 200, 460)
        assert isinstance(ledger.open_position(1, TOKEN_A, 10), OpenResult)
        assert isinstance(ledger.open_position(1, TOKEN_A, 10), OpenResult)
        r = ledger.open_position(1, TOKEN_A, 10)
        assert r.reason == RejectReason.DAILY_TRADE_CAP_REACHED

        # T0 is noon UTC; 12h later is the next day
        clock.advance(12 * 3600)
        assert isinstance(ledger.open_position(1, TOKEN_A, 10), OpenResult)
        assert ledger.get_account(1).trades_on(clock.now) == 1

    def test_open_positions_cap(self, db_engine, oracle, default_cfg, clock):
        cfg = replace(default_cfg, max_open_positions=1)
        ledger = ChallengeLedger(db_engine, oracle, cfg, clock=clock)
        ledger.grant_account(1, 200, 460)
        ledger.open_position(1, TOKEN_A, 10)
        r = ledger.open_position(1, TOKEN_B, 10)
        assert r.reason == RejectReason.TOO_MANY_POSITIONS

    def test_storage_error_propagates_and_rolls_back(self, ledger, funded):
        before = ledger.get_account(funded)
        err = OperationalError("INSERT INTO fills", {}, Exception("disk I/O error"))
        with patch("crucible.persistence.store.insert_fill", side_effect=err):
            with pytest.raises(OperationalError):
                ledger.open_position(funded, TOKEN_A, 50)
        assert ledger.get_account(funded) == before
        assert ledger.get_positions(funded) == []

    def test_emits_opened_event(self, ledger, funded):
        with patch("crucible.ledger.emit") as mock_emit:
            result = ledger.open_position(funded, TOKEN_A, 50)
        event_type, data = mock_emit.call_args_list[0].args
        assert event_type == EventType.POSITION_OPENED
        assert data["position_id"] == result.position.id
        assert data["usd"] == 50.0
    def test_trade_after_inactivity_fails_challenge(self, ledger, funded, clock):
        clock.advance(3 * 86400)
        with patch("crucible.ledger.emit") as mock_emit:
            r = ledger.open_position(funded, TOKEN_A, 10)
        assert isinstance(r, Rejection)
        assert r.reason == RejectReason.CHALLENGE_NOT_ACTIVE
        acct = ledger.get_account(funded)
        assert acct.status == ChallengeStatus.FAILED_INACTIVITY
        assert acct.balance == Decimal("200")
        assert acct.closed_at == clock.now
        assert ledger.get_positions(funded) == []
        assert ledger.get_fills(funded) == []
        mock_emit.assert_called_once_with(
            EventType.STATUS_CHANGED,
            {"user_id": funded, "new_status": "failed_inactivity", "equity": 200.0},
            user_id=funded,
        )

    def test_trade_at_inactivity_limit_is_allowed(self, ledger, funded, clock):
        clock.advance(86400)
        assert isinstance(ledger.open_position(funded, TOKEN_A, 10), OpenResult)
        assert ledger.get_account(funded).status == ChallengeStatus.ACTIVE

    def test_locks_account_row(self, ledger, funded):
        with patch("crucible.persistence.store.load_account", wraps=store.load_account) as load:
            ledger.open_position(funded, TOKEN_A, 10)
        assert any(c.kwargs.get("for_update") for c in load.call_args_list)


class TestClosePosition:
    def test_partial_close_preserves_ratio(self, ledger, oracle):
        ledger.grant_account(5, Decimal("1000"), Decimal("5000"))
        oracle.set_price(TOKEN_A, Decimal("2"))
        opened = ledger.open_position(5, TOKEN_A, 100)
        assert opened.position.tokens_held == Decimal("50")

        oracle.set_price(TOKEN_A, Decimal("3"))
        result = ledger.close_position(5, opened.position.id, 40)
        assert isinstance(result, CloseResult)
        assert result.proceeds == Decimal("60")
        assert result.pnl == Decimal("20")
        assert result.position.tokens_held == Decimal("30")
        assert result.position.cost_basis_usd == Decimal("60")
        assert result.position.entry_price == Decimal("2")

        [stored] = ledger.get_positions(5)
        assert stored.tokens_held == Decimal("30")
        assert stored.cost_basis_usd == Decimal("60")
        assert ledger.get_account(5).balance == Decimal("960")

    def test_full_close_deletes_position(self, ledger, oracle, funded):
        opened = ledger.open_position(funded, TOKEN_A, 50)
        oracle.set_price(TOKEN_A, Decimal("1.5"))
        result = ledger.close_position(funded, opened.position.id, 100)
        assert result.position is None
        assert result.proceeds == Decimal("75")
        assert result.pnl == Decimal("25")
        assert ledger.get_positions(funded) == []
        acct = ledger.get_account(funded)
        assert acct.balance == Decimal("225")
        assert acct.realized_pnl == Decimal("25")

    def test_fallback_to_entry_price(self, ledger, oracle, funded):
        opened = ledger.open_position(funded, TOKEN_A, 50)
        oracle.set_price(TOKEN_A, None)
        result = ledger.close_position(funded, opened.position.id, 100)
        assert result.used_fallback_price
        assert result.price == Decimal("1")
        assert result.pnl == ZERO
        assert ledger.get_account(funded).balance == Decimal("200")
        assert ledger.get_fills(funded)[0].price_fallback is True

    def test_invalid_percent(self, ledger, funded):
        opened = ledger.open_position(funded, TOKEN_A, 50)
        for bad in (0, -10, 101, "half"):
            r = ledger.close_position(funded, opened.position.id, bad)
            assert r.reason == RejectReason.INVALID_AMOUNT, bad

    def test_unknown_or_foreign_position(self, ledger, funded):
        ledger.grant_account(43, 200, 460)
        theirs = ledger.open_position(43, TOKEN_A, 50)
        assert ledger.close_position(funded, "nope", 50).reason == RejectReason.POSITION_NOT_FOUND
        r = ledger.close_position(funded, theirs.position.id, 50)
        assert r.reason == RejectReason.POSITION_NOT_FOUND
        assert ledger.get_positions(43)[0].tokens_held == Decimal("50")

    def test_close_does_not_count_as_trade(self, ledger, funded, clock):
        opened = ledger.open_position(funded, TOKEN_A, 50)
        clock.advance(10)
        ledger.close_position(funded, opened.position.id, 50)
        acct = ledger.get_account(funded)
        assert acct.trades_on(clock.now) == 1
        assert acct.last_activity_at == clock.now
    def test_close_after_inactivity_fails_challenge(self, ledger, oracle, funded, clock):
        opened = ledger.open_position(funded, TOKEN_A, 50)
        clock.advance(86400 + 1)
        oracle.set_price(TOKEN_A, Decimal("1.5"))
        r = ledger.close_position(funded, opened.position.id, 100)
        assert r.reason == RejectReason.CHALLENGE_NOT_ACTIVE
        acct = ledger.get_account(funded)
        assert acct.status == ChallengeStatus.FAILED_INACTIVITY
        assert acct.balance == Decimal("150")
        assert acct.realized_pnl == ZERO
        [pos] = ledger.get_positions(funded)
        assert pos.tokens_held == Decimal("50")
        assert [f.side for f in ledger.get_fills(funded)] == ["BUY"]


class TestConservation:
    def test_constant_prices(self, ledger, oracle, funded):
        a = ledger.open_position(funded, TOKEN_A, 50).position
        b = ledger.open_position(funded, TOKEN_B, 40).position
        assert _conserved(ledger, funded)
        ledger.close_position(funded, a.id, 25)
        assert _conserved(ledger, funded)
        ledger.close_position(funded, b.id, 100)
        ledger.open_position(funded, TOKEN_B, 30)
        ledger.close_position(funded, a.id, 33.3)
        assert _conserved(ledger, funded)
        assert ledger.get_account(funded).realized_pnl == ZERO

    def test_with_gains_and_losses(self, ledger, oracle, funded):
        a = ledger.open_position(funded, TOKEN_A, 50).position
        b = ledger.open_position(funded, TOKEN_B, 40).position
        oracle.set_price(TOKEN_A, Decimal("1.3"))
        oracle.set_price(TOKEN_B, Decimal("0.45"))
        ledger.close_position(funded, a.id, 70)
        ledger.close_position(funded, b.id, 100)
        assert _conserved(ledger, funded)
        acct = ledger.get_account(funded)
        # A: 35 tokens * 0.3 = +10.5; B: 80 tokens * -0.05 = -4
        assert acct.realized_pnl == Decimal("6.5")
        assert acct.balance >= ZERO


class TestEvaluate:
    def test_end_to_end_pass(self, ledger, oracle, funded):
        ledger.open_position(funded, TOKEN_A, 60)
        oracle.set_price(TOKEN_A, Decimal("6"))
        with patch("crucible.ledger.emit") as mock_emit:
            snap = ledger.evaluate(funded)
        ev = snap.evaluation
        assert ev.unrealized_pnl == Decimal("300")
        assert ev.equity == Decimal("500")
        assert ev.status == ChallengeStatus.PASSED
        assert ledger.get_account(funded).status == ChallengeStatus.PASSED
        mock_emit.assert_called_once_with(
            EventType.STATUS_CHANGED,
            {"user_id": funded, "new_status": "passed", "equity": 500.0},
            user_id=funded,
        )

    def test_drawdown_failure_from_trailing_peak(self, ledger, oracle, funded):
        ledger.open_position(funded, TOKEN_A, 60)
        oracle.set_price(TOKEN_A, Decimal("3"))
        snap = ledger.evaluate(funded)
        assert snap.account.peak_equity == Decimal("320")
        # 140 cash + 60 tokens * 0.1 = 146 → (320-146)/320 = 54%
        oracle.set_price(TOKEN_A, Decimal("0.1"))
        snap = ledger.evaluate(funded)
        assert snap.evaluation.status == ChallengeStatus.FAILED_DRAWDOWN
        assert snap.account.peak_equity == Decimal("320")

    def test_terminal_state_is_final(self, ledger, oracle, funded):
        pos = ledger.open_position(funded, TOKEN_A, 60).position
        oracle.set_price(TOKEN_A, Decimal("6"))
        ledger.evaluate(funded)
        frozen = ledger.get_account(funded)
        positions = ledger.get_positions(funded)

        assert ledger.open_position(funded, TOKEN_B, 10).reason == RejectReason.CHALLENGE_NOT_ACTIVE
        assert ledger.close_position(funded, pos.id, 100).reason == RejectReason.CHALLENGE_NOT_ACTIVE
        oracle.set_price(TOKEN_A, Decimal("0.01"))
        snap = ledger.evaluate(funded, touch=True)
        assert snap.evaluation.status == ChallengeStatus.PASSED
        assert ledger.get_account(funded) == frozen
        assert ledger.get_positions(funded) == positions

    def test_peak_monotonic_across_calls(self, ledger, oracle, funded):
        ledger.open_position(funded, TOKEN_A, 60)
        peaks = []
        for price in ("1.2", "0.9", "1.8", "1.1", "2.5", "2.0"):
            oracle.set_price(TOKEN_A, Decimal(price))
            peaks.append(ledger.evaluate(funded).account.peak_equity)
        assert peaks == sorted(peaks)
        assert all(p >= Decimal("200") for p in peaks)

    def test_unknown_user(self, ledger):
        assert ledger.evaluate(404) is None

    def test_refresh_records_activity(self, ledger, funded, clock):
        clock.advance(3600)
        snap = ledger.evaluate(funded, touch=True)
        assert snap.account.last_activity_at == clock.now
        assert ledger.get_account(funded).last_activity_at == clock.now

    def test_refresh_after_timeout_still_fails(self, ledger, funded, clock):
        clock.advance(86400 + 1)
        snap = ledger.evaluate(funded, touch=True)
        assert snap.evaluation.status == ChallengeStatus.FAILED_INACTIVITY


class TestSweep:
    def test_inactive_accounts_fail(self, ledger, funded, clock):
        ledger.grant_account(43, 200, 460)
        clock.advance(3600)
        ledger.open_position(43, TOKEN_A, 10)
        clock.advance(86400 - 1800)
        assert ledger.sweep_inactive() == [funded]
        assert ledger.get_account(funded).status == ChallengeStatus.FAILED_INACTIVITY
        assert ledger.get_account(43).status == ChallengeStatus.ACTIVE

    def test_sweep_is_idempotent(self, ledger, funded, clock):
        clock.advance(86400 + 1)
        assert ledger.sweep_inactive() == [funded]
        before = ledger.get_account(funded)
        assert ledger.sweep_inactive() == []
        assert ledger.get_account(funded) == before

    def test_sweep_does_not_touch_activity(self, ledger, funded, clock):
        clock.advance(3600)
        ledger.sweep_inactive()
        assert ledger.get_account(funded).last_activity_at == clock.now - 3600


class TestConcurrency:
    def test_concurrent_buys_cannot_overspend(self, ledger, funded):
        results = []
        barrier = threading.Barrier(4)

        def buy():
            barrier.wait()
            results.append(ledger.open_position(funded, TOKEN_A, 60))

        threads = [threading.Thread(target=buy) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        opened = [r for r in results if isinstance(r, OpenResult)]
        rejected = [r for r in results if isinstance(r, Rejection)]
        assert len(opened) == 3
        assert [r.reason for r in rejected] == [RejectReason.INSUFFICIENT_BALANCE]
        assert ledger.get_account(funded).balance == Decimal("20")
        assert len(ledger.get_positions(funded)) == 3
        assert _conserved(ledger, funded)


class TestPricing:
    def test_marks_fetched_in_parallel(self, db_engine, default_cfg, clock):
        # Each quote blocks until all three are in flight at once.
        barrier = threading.Barrier(3, timeout=5)

        def price(token_id):
            barrier.wait()
            return TokenQuote(price=Decimal("2"), symbol=token_id.upper())

        oracle = MagicMock()
        oracle.get_price.side_effect = price
        ledger = ChallengeLedger(db_engine, oracle, default_cfg, clock=clock)
        marks = ledger._marks(["a", "b", "c", "a"])
        assert marks == {"a": Decimal("2"), "b": Decimal("2"), "c": Decimal("2")}
        assert oracle.get_price.call_count == 3

    def test_unusable_quotes_left_out(self, ledger, oracle):
        oracle.set_price(TOKEN_B, None)
        assert ledger._marks([TOKEN_A, TOKEN_B]) == {TOKEN_A: Decimal("1")}


class TestStore:
    def test_account_row_lock(self):
        conn = MagicMock()
        conn.execute.return_value.first.return_value = None
        dialect = postgresql.dialect()

        store.load_account(conn, 42, for_update=True)
        stmt = conn.execute.call_args.args[0]
        assert "FOR UPDATE" in str(stmt.compile(dialect=dialect))

        store.load_account(conn, 42)
        stmt = conn.execute.call_args.args[0]
        assert "FOR UPDATE" not in str(stmt.compile(dialect=dialect))
