"""Database session helpers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from spanlens.db.engine import build_engine

SessionFactory = Callable[[], Session]


def build_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    """Session factory bound to the given engine (or the project engine)."""
    return sessionmaker(bind=engine or build_engine(), expire_on_commit=False)


def get_session() -> Session:
    """Ad-hoc session on the default engine; callers own commit and close."""
    return build_session_factory()()


@contextmanager
def transaction(session_factory: SessionFactory) -> Iterator[Session]:
    """
    One unit of work: commit on success, roll back on any exception.

    Everything read and written inside the block belongs to the same DB transaction.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
