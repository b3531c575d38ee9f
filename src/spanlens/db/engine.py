# src/spanlens/db/engine.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from spanlens.config.settings import settings

# Dialects that honour SELECT ... FOR UPDATE row locks.
ROW_LOCK_DIALECTS = frozenset({"postgresql", "mysql", "mariadb", "oracle"})


@dataclass(frozen=True)
class DBPingResult:
    ok: bool
    detail: str


def build_engine(db_url: Optional[str] = None) -> Engine:
    """
    Engine for the record store.

    URL precedence: explicit argument, then DATABASE_URL, then SPANLENS_DB_URL.
    Server databases get pool_pre_ping; embedded DuckDB does not need it.
    """
    url = db_url or os.getenv("DATABASE_URL") or settings.db_url
    if url.startswith(("postgresql", "mysql")):
        return create_engine(url, future=True, pool_pre_ping=True)
    return create_engine(url, future=True)


def supports_row_locks(engine: Engine) -> bool:
    return engine.dialect.name in ROW_LOCK_DIALECTS


def ping_db(engine: Engine) -> DBPingResult:
    """Run `select 1`. Failures are reported in the result, never raised."""
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1")).scalar_one()
        return DBPingResult(ok=True, detail="ok")
    except Exception as e:
        return DBPingResult(ok=False, detail=f"{type(e).__name__}: {e}")
