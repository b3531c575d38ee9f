"""Global test fixtures."""

import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from spanlens.db.engine import build_engine  # noqa: E402
from spanlens.db.init_db import init_db  # noqa: E402
from spanlens.db.session import build_session_factory  # noqa: E402


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"duckdb:///{tmp_path / 'test_spanlens.duckdb'}"


@pytest.fixture
def engine(db_url):
    engine = build_engine(db_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    # File-backed DuckDB: every session gets its own connection, like production.
    return build_session_factory(engine)


@pytest.fixture(autouse=True)
def _reset_spanlens_logger():
    # CLI runs install a non-propagating handler; caplog needs propagation back.
    yield
    logger = logging.getLogger("spanlens")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
