"""
Row locks for read-modify-write transactions.

On PostgreSQL/MySQL the row itself is locked with SELECT ... FOR UPDATE. Embedded
engines (DuckDB, SQLite) have no row locks, so writers inside this process are
serialized per (table, key) instead; those engines are single-process anyway.

Registry entries are reference counted and dropped when the last holder or
waiter leaves, so the registry only holds keys that are in use.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


_registry_lock = threading.Lock()
_locks: dict[tuple[str, str], _Entry] = {}


def _acquire_entry(key: tuple[str, str]) -> _Entry:
    with _registry_lock:
        entry = _locks.get(key)
        if entry is None:
            entry = _locks[key] = _Entry()
        entry.users += 1
        return entry


def _release_entry(key: tuple[str, str], entry: _Entry) -> None:
    with _registry_lock:
        entry.users -= 1
        if entry.users == 0:
            del _locks[key]


@contextmanager
def keyed_lock(table: str, key: str) -> Iterator[None]:
    """Hold the in-process lock for one row key for the duration of the block."""
    registry_key = (table, key)
    entry = _acquire_entry(registry_key)
    try:
        with entry.lock:
            yield
    finally:
        _release_entry(registry_key, entry)
