"""Unit tests for the atomic progress tracker."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

from spanlens.errors import NotFoundError, ValidationFailure
from spanlens.models.domain import CounterState
from spanlens.services.progress import (
    InMemoryCounterStore,
    decide_execution_status,
    decide_experiment_status,
    increment_and_maybe_complete,
)

NOW = datetime(2024, 5, 1, 12, 0, 0)


def _store(total: int, status: str = "running", entity_id: str = "e1") -> InMemoryCounterStore:
    store = InMemoryCounterStore()
    store.put(CounterState(entity_id=entity_id, status=status, total=total, completed=0, failed=0))
    return store


def _increment(store, completed=1, failed=0, decide=decide_experiment_status):
    return increment_and_maybe_complete(store, "e1", completed, failed, decide, now_fn=lambda: NOW)


def test_completes_when_processed_reaches_total():
    store = _store(total=2)
    first = _increment(store)
    assert first.is_now_complete is False
    assert first.state.status == "running"

    second = _increment(store, completed=0, failed=1)
    assert second.is_now_complete is True
    assert second.state.status == "partial"
    assert second.state.completed_at == NOW
    assert store.get("e1").processed == 2


def test_zero_total_never_completes():
    store = _store(total=0)
    result = _increment(store, completed=3)
    assert result.is_now_complete is False
    assert store.get("e1").completed == 3
    assert store.get("e1").status == "running"


def test_increments_after_terminal_are_ignored():
    store = _store(total=1)
    assert _increment(store).is_now_complete is True
    writes = store.writes

    late = _increment(store)
    assert late.is_now_complete is False
    assert late.state.status == "completed"
    assert store.writes == writes
    assert store.get("e1").completed == 1


def test_missing_entity_raises_not_found():
    with pytest.raises(NotFoundError):
        increment_and_maybe_complete(InMemoryCounterStore(), "nope", 1, 0, decide_experiment_status)


def test_negative_deltas_rejected():
    with pytest.raises(ValidationFailure):
        _increment(_store(total=1), completed=-1)


@pytest.mark.parametrize(
    "completed,failed,expected",
    [(3, 0, "completed"), (0, 3, "failed"), (2, 1, "partial")],
)
def test_experiment_status_decision(completed, failed, expected):
    state = CounterState(entity_id="x", status="running", total=3, completed=completed, failed=failed)
    assert decide_experiment_status(state) == expected


@pytest.mark.parametrize(
    "completed,failed,expected",
    [(3, 0, "completed"), (0, 3, "failed"), (2, 1, "completed")],
)
def test_execution_status_decision(completed, failed, expected):
    state = CounterState(entity_id="x", status="running", total=3, completed=completed, failed=failed)
    assert decide_execution_status(state) == expected


def test_concurrent_reporters_observe_completion_exactly_once():
    total = 200
    store = _store(total=total)
    barrier = threading.Barrier(8)

    def report(i: int) -> bool:
        if i < 8:
            barrier.wait()
        return _increment(store, completed=1 if i % 5 else 0, failed=0 if i % 5 else 1).is_now_complete

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(report, range(total)))

    assert outcomes.count(True) == 1
    final = store.get("e1")
    assert final.processed == total
    assert final.failed == total // 5
    assert final.status == "partial"
