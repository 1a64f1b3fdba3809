"""Row mapping for accounts, positions and fills.

Every function takes an open SQLAlchemy connection so callers control the
transaction boundary (one `engine.begin()` per ledger operation).
"""

from __future__ import annotations

from dataclasses import asdict

from sqlalchemy import select
from sqlalchemy.engine import Connection

from crucible.models import Account, ChallengeStatus, Fill, Position
from crucible.persistence.schema import accounts, fills, positions


def _row_to_account(row) -> Account:
    m = row._mapping
    return Account(
        user_id=m["user_id"],
        balance=m["balance"],
        start_balance=m["start_balance"],
        peak_equity=m["peak_equity"],
        target=m["target"],
        status=ChallengeStatus(m["status"]),
        last_activity_at=m["last_activity_at"],
        created_at=m["created_at"],
        bounty=m["bounty"],
        realized_pnl=m["realized_pnl"],
        trades_today=m["trades_today"],
        trade_day=m["trade_day"],
        closed_at=m["closed_at"],
    )


def _row_to_position(row) -> Position:
    m = row._mapping
    return Position(
        id=m["id"],
        user_id=m["user_id"],
        token_id=m["token_id"],
        symbol=m["symbol"] or "",
        cost_basis_usd=m["cost_basis_usd"],
        tokens_held=m["tokens_held"],
        entry_price=m["entry_price"],
        opened_at=m["opened_at"],
    )


def _account_values(account: Account) -> dict:
    values = asdict(account)
    values["status"] = account.status.value
    return values


def load_account(conn: Connection, user_id: int, for_update: bool = False) -> Account | None:
    """`for_update` row-locks the account on backends that support it (no-op on SQLite)."""
    q = select(accounts).where(accounts.c.user_id == user_id)
    if for_update:
        q = q.with_for_update()
    row = conn.execute(q).first()
    return _row_to_account(row) if row is not None else None


def load_positions(conn: Connection, user_id: int) -> list[Position]:
    q = (
        select(positions)
        .where(positions.c.user_id == user_id)
        .order_by(positions.c.opened_at, positions.c.id)
    )
    return [_row_to_position(r) for r in conn.execute(q)]


def load_position(conn: Connection, user_id: int, position_id: str) -> Position | None:
    q = select(positions).where(
        positions.c.id == position_id, positions.c.user_id == user_id
    )
    row = conn.execute(q).first()
    return _row_to_position(row) if row is not None else None


def active_user_ids(conn: Connection) -> list[int]:
    q = (
        select(accounts.c.user_id)
        .where(accounts.c.status == ChallengeStatus.ACTIVE.value)
        .order_by(accounts.c.user_id)
    )
    return [r.user_id for r in conn.execute(q)]


def replace_account(conn: Connection, account: Account) -> None:
    """Drop any prior account state for the user and insert a fresh one."""
    conn.execute(positions.delete().where(positions.c.user_id == account.user_id))
    conn.execute(accounts.delete().where(accounts.c.user_id == account.user_id))
    conn.execute(accounts.insert().values(**_account_values(account)))


def update_account(conn: Connection, account: Account) -> None:
    values = _account_values(account)
    del values["user_id"]
    conn.execute(
        accounts.update().where(accounts.c.user_id == account.user_id).values(**values)
    )


def insert_position(conn: Connection, position: Position) -> None:
    conn.execute(positions.insert().values(**asdict(position)))


def update_position(conn: Connection, position: Position) -> None:
    conn.execute(
        positions.update()
        .where(positions.c.id == position.id)
        .values(
            cost_basis_usd=position.cost_basis_usd,
            tokens_held=position.tokens_held,
        )
    )


def delete_position(conn: Connection, position_id: str) -> None:
    conn.execute(positions.delete().where(positions.c.id == position_id))


def insert_fill(conn: Connection, fill: Fill) -> None:
    conn.execute(fills.insert().values(**asdict(fill)))


def load_fills(conn: Connection, user_id: int, limit: int = 100) -> list[Fill]:
    q = (
        select(fills)
        .where(fills.c.user_id == user_id)
        .order_by(fills.c.ts.desc(), fills.c.id.desc())
        .limit(min(limit, 1000))
    )
    result = []
    for row in conn.execute(q):
        m = row._mapping
        result.append(Fill(
            ts=m["ts"],
            user_id=m["user_id"],
            position_id=m["position_id"],
            token_id=m["token_id"],
            side=m["side"],
            usd=m["usd"],
            tokens=m["tokens"],
            price=m["price"],
            pnl=m["pnl"],
            price_fallback=bool(m["price_fallback"]),
        ))
    return result
