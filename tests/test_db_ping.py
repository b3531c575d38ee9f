from __future__ import annotations

from spanlens.db.engine import build_engine, ping_db, supports_row_locks


def test_ping_db_inmemory_duckdb() -> None:
    engine = build_engine("duckdb:///:memory:")
    result = ping_db(engine)
    assert result.ok is True
    assert result.detail == "ok"


def test_ping_db_reports_failure(tmp_path) -> None:
    engine = build_engine(f"duckdb:///{tmp_path / 'missing-dir' / 'db.duckdb'}")
    result = ping_db(engine)
    assert result.ok is False
    assert result.detail


def test_duckdb_has_no_row_locks() -> None:
    assert supports_row_locks(build_engine("duckdb:///:memory:")) is False
