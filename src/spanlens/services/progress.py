"""
Atomic progress tracking for executions and experiments.

Workers report outcomes concurrently. Each report is one locked
read-modify-write: lock the row, read the counters, add the deltas, decide
completion, write, commit. Exactly one reporter observes the transition to a
terminal status.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Iterator, Optional, Protocol

from spanlens.db.locking import keyed_lock
from spanlens.db.schema import utcnow
from spanlens.db.session import SessionFactory, transaction
from spanlens.errors import NotFoundError, ValidationFailure
from spanlens.models.domain import (
    EXECUTION_TERMINAL_STATUSES,
    EXPERIMENT_TERMINAL_STATUSES,
    CounterState,
    ExecutionStatus,
    ExperimentStatus,
    ProgressResult,
)

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = EXECUTION_TERMINAL_STATUSES | EXPERIMENT_TERMINAL_STATUSES

StatusDecider = Callable[[CounterState], str]


class LockedCounter:
    """Counter state read under lock; write() stages the new state in the same unit of work."""

    def __init__(self, state: Optional[CounterState], writer: Callable[[CounterState], None]):
        self.state = state
        self._writer = writer

    def write(self, state: CounterState) -> None:
        self._writer(state)
        self.state = state


class CounterStore(Protocol):
    def locked(self, entity_id: str) -> Any:
        """
        Context manager yielding a LockedCounter (state None when the entity is missing).

        The lock is held and the write is committed when the block exits normally;
        an exception discards the write.
        """
        ...


@dataclass(frozen=True)
class CounterColumns:
    """Column names of the counters on a tracked table."""

    total: str
    completed: str
    failed: str


EXECUTION_COLUMNS = CounterColumns(total="spans_matched", completed="spans_scored", failed="errors_count")
EXPERIMENT_COLUMNS = CounterColumns(total="total_items", completed="completed_items", failed="failed_items")


class SqlCounterStore:
    """
    Counters living on a SQLAlchemy-mapped table (executions or experiments).

    The in-process keyed lock is taken before the transaction opens and
    released after commit; dialects with row locks additionally lock the row
    with SELECT ... FOR UPDATE.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        repo_cls: Callable[[Any], Any],
        columns: CounterColumns,
        lock_table: str,
        project_id: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.repo_cls = repo_cls
        self.columns = columns
        self.lock_table = lock_table
        self.project_id = project_id

    def _read(self, row: Any) -> CounterState:
        return CounterState(
            entity_id=row.id,
            status=row.status,
            total=int(getattr(row, self.columns.total) or 0),
            completed=int(getattr(row, self.columns.completed) or 0),
            failed=int(getattr(row, self.columns.failed) or 0),
            started_at=row.started_at,
            completed_at=row.completed_at,
        )

    def _apply(self, row: Any, state: CounterState) -> None:
        row.status = state.status
        setattr(row, self.columns.completed, state.completed)
        setattr(row, self.columns.failed, state.failed)
        row.completed_at = state.completed_at
        if state.completed_at is not None and state.started_at is not None and hasattr(row, "duration_ms"):
            row.duration_ms = int((state.completed_at - state.started_at).total_seconds() * 1000)

    @contextmanager
    def locked(self, entity_id: str) -> Iterator[LockedCounter]:
        with keyed_lock(self.lock_table, entity_id):
            with transaction(self.session_factory) as session:
                row = self.repo_cls(session).get(entity_id, self.project_id, for_update=True)
                if row is None:
                    yield LockedCounter(None, _reject_write)
                    return
                yield LockedCounter(self._read(row), lambda state: self._apply(row, state))


class InMemoryCounterStore:
    """Thread-safe counter store for tests and single-process embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, CounterState] = {}
        self.writes = 0

    def put(self, state: CounterState) -> None:
        with self._lock:
            self._states[state.entity_id] = state

    def get(self, entity_id: str) -> Optional[CounterState]:
        with self._lock:
            return self._states.get(entity_id)

    @contextmanager
    def locked(self, entity_id: str) -> Iterator[LockedCounter]:
        with self._lock:
            staged: list[CounterState] = []
            yield LockedCounter(self._states.get(entity_id), staged.append)
            if staged:
                self._states[entity_id] = staged[-1]
                self.writes += 1


def _reject_write(_state: CounterState) -> None:
    raise NotFoundError("Cannot write counters of a missing entity")


def decide_experiment_status(state: CounterState) -> str:
    if state.failed == 0:
        return ExperimentStatus.COMPLETED.value
    if state.completed == 0:
        return ExperimentStatus.FAILED.value
    return ExperimentStatus.PARTIAL.value


def decide_execution_status(state: CounterState) -> str:
    """An execution fails only when every processed span errored."""
    if state.completed == 0 and state.failed > 0:
        return ExecutionStatus.FAILED.value
    return ExecutionStatus.COMPLETED.value


def increment_and_maybe_complete(
    store: CounterStore,
    entity_id: str,
    completed_delta: int,
    failed_delta: int,
    decide_status: StatusDecider,
    now_fn: Callable[[], datetime] = utcnow,
) -> ProgressResult:
    """
    Add the deltas and, when completed + failed reaches a positive total,
    move the entity to its terminal status.

    Increments on an already terminal entity are dropped and report
    is_now_complete=False, so a completion is observed exactly once.
    Raises NotFoundError when the entity does not exist.
    """
    if completed_delta < 0 or failed_delta < 0:
        raise ValidationFailure(
            "Progress deltas must be non-negative",
            details={"completed_delta": completed_delta, "failed_delta": failed_delta},
        )

    with store.locked(entity_id) as counter:
        state = counter.state
        if state is None:
            raise NotFoundError(f"Tracked entity not found: {entity_id}", details={"entity_id": entity_id})

        if state.status in TERMINAL_STATUSES:
            logger.warning(
                "Ignoring progress for terminal entity: id=%s status=%s completed_delta=%d failed_delta=%d",
                entity_id,
                state.status,
                completed_delta,
                failed_delta,
            )
            return ProgressResult(is_now_complete=False, state=state)

        updated = replace(
            state,
            completed=state.completed + completed_delta,
            failed=state.failed + failed_delta,
        )
        is_now_complete = updated.total > 0 and updated.processed >= updated.total
        if is_now_complete:
            updated = replace(updated, status=decide_status(updated), completed_at=now_fn())

        counter.write(updated)

    if is_now_complete:
        logger.info(
            "Progress complete: id=%s status=%s completed=%d failed=%d total=%d",
            entity_id,
            updated.status,
            updated.completed,
            updated.failed,
            updated.total,
        )
    return ProgressResult(is_now_complete=is_now_complete, state=updated)
