"""SQLAlchemy Core table definitions for the challenge ledger.

All timestamps are Unix epoch floats. Money and token quantities are stored
as exact decimal text so balances round-trip without float drift.
"""

from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.types import TypeDecorator


class DecimalText(TypeDecorator):
    """Decimal stored as TEXT (SQLite has no native decimal type)."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("user_id", Integer, primary_key=True, autoincrement=False),
    Column("balance", DecimalText, nullable=False),
    Column("start_balance", DecimalText, nullable=False),
    Column("peak_equity", DecimalText, nullable=False),
    Column("target", DecimalText, nullable=False),
    Column("bounty", DecimalText, nullable=False),
    Column("realized_pnl", DecimalText, nullable=False),
    Column("status", String(20), nullable=False),
    Column("trades_today", Integer, nullable=False, default=0),
    Column("trade_day", String(10)),
    Column("last_activity_at", Float, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("closed_at", Float),
    Index("ix_accounts_status", "status"),
)

positions = Table(
    "positions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", Integer, ForeignKey("accounts.user_id"), nullable=False),
    Column("token_id", String(64), nullable=False),
    Column("symbol", String(32)),
    Column("cost_basis_usd", DecimalText, nullable=False),
    Column("tokens_held", DecimalText, nullable=False),
    Column("entry_price", DecimalText, nullable=False),
    Column("opened_at", Float, nullable=False),
    Index("ix_positions_user", "user_id"),
)

fills = Table(
    "fills",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ts", Float, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("position_id", String(32), nullable=False),
    Column("token_id", String(64), nullable=False),
    Column("side", String(4), nullable=False),
    Column("usd", DecimalText, nullable=False),
    Column("tokens", DecimalText, nullable=False),
    Column("price", DecimalText, nullable=False),
    Column("pnl", DecimalText, nullable=False),
    Column("price_fallback", Boolean, nullable=False, default=False),
    Index("ix_fills_user_ts", "user_id", "ts"),
)
