"""Database engine initialization — SQLite WAL mode by default.

Usage:
    engine = init_db()                        # data/crucible.db
    engine = init_db("postgresql://...")      # swap for production
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine as SAEngine

from crucible.persistence.schema import metadata

log = logging.getLogger("crucible.persistence")

DEFAULT_DB_PATH = "data/crucible.db"


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    """WAL for concurrent reads, busy timeout so competing writers wait instead of failing."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(url: str | None = None) -> SAEngine:
    """Initialize the database engine and create tables if needed."""
    if url is None:
        db_path = Path(DEFAULT_DB_PATH)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"

    engine = create_engine(url, pool_pre_ping=True)

    if url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)

    metadata.create_all(engine)
    log.info("DB │ initialized at %s", url)
    return engine

