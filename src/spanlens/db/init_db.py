from __future__ import annotations

from sqlalchemy.engine import Engine

from spanlens.db.schema import Base


def init_db(engine: Engine, reset: bool = False) -> None:
    """
    Create any missing tables; with reset=True drop everything first.

    DDL runs on one plain connection and is committed explicitly, since DuckDB
    does not reliably commit DDL issued inside a managed transaction block.
    """
    conn = engine.connect()
    try:
        if reset:
            Base.metadata.drop_all(bind=conn)
        Base.metadata.create_all(bind=conn)
        conn.commit()
    finally:
        conn.close()
