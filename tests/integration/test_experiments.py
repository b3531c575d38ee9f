"""Integration tests: experiment progress under concurrent reporters."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from spanlens.errors import ConflictError, NotFoundError, ValidationFailure
from spanlens.services.experiments import ExperimentService


class Clock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2024, 6, 1, 12, 0, 0))


@pytest.fixture
def service(session_factory, clock):
    return ExperimentService(session_factory, now_fn=clock)


def _running(service, total: int):
    experiment = service.create("p1", "prompt-v2", dataset_id="d1")
    service.set_total_items(experiment.id, "p1", total)
    service.start(experiment.id, "p1")
    return experiment


def test_progress_reports_eta_while_running(service, clock):
    experiment = _running(service, total=10)
    clock.now += timedelta(seconds=20)
    service.increment_progress(experiment.id, "p1", completed=3, failed=1)

    progress = service.get_progress(experiment.id, "p1")
    assert progress.status == "running"
    assert (progress.completed_items, progress.failed_items, progress.pending_items) == (3, 1, 6)
    assert progress.progress_pct == pytest.approx(40.0)
    assert progress.elapsed_seconds == pytest.approx(20.0)
    assert progress.eta_seconds == pytest.approx(30.0)


def test_completion_statuses(service):
    all_ok = _running(service, total=2)
    assert service.increment_and_check_completion(all_ok.id, "p1", 1, 0) is False
    assert service.increment_and_check_completion(all_ok.id, "p1", 1, 0) is True
    finished = service.get_progress(all_ok.id, "p1")
    assert finished.status == "completed"
    assert finished.eta_seconds is None
    assert finished.completed_at is not None

    mixed = _running(service, total=2)
    service.increment_and_check_completion(mixed.id, "p1", 1, 0)
    service.increment_and_check_completion(mixed.id, "p1", 0, 1)
    assert service.get(mixed.id, "p1").status == "partial"

    failed = _running(service, total=1)
    service.increment_and_check_completion(failed.id, "p1", 0, 1)
    assert service.get(failed.id, "p1").status == "failed"


def test_late_increments_are_dropped(service):
    experiment = _running(service, total=1)
    assert service.increment_and_check_completion(experiment.id, "p1", 1, 0) is True
    assert service.increment_and_check_completion(experiment.id, "p1", 1, 0) is False
    service.increment_progress(experiment.id, "p1", 1, 0)
    assert service.get(experiment.id, "p1").completed_items == 1


def test_not_found_is_surfaced(service):
    with pytest.raises(NotFoundError):
        service.increment_and_check_completion("missing", "p1", 1, 0)
    with pytest.raises(NotFoundError):
        service.increment_progress("missing", "p1", 1, 0)
    experiment = _running(service, total=1)
    with pytest.raises(NotFoundError):
        service.get_progress(experiment.id, "p2")


def test_lifecycle_rules(service):
    experiment = service.create("p1", "exp")
    with pytest.raises(ValidationFailure):
        service.set_total_items(experiment.id, "p1", -1)
    with pytest.raises(ValidationFailure):
        service.create("p1", "  ")

    service.start(experiment.id, "p1")
    with pytest.raises(ConflictError):
        service.start(experiment.id, "p1")

    assert service.cancel(experiment.id, "p1").status == "cancelled"
    with pytest.raises(ConflictError):
        service.cancel(experiment.id, "p1")
    assert [e.id for e in service.list_experiments("p1")] == [experiment.id]


def test_concurrent_workers_complete_exactly_once(service):
    total = 60
    experiment = _running(service, total=total)
    barrier = threading.Barrier(6)

    def worker(i: int) -> bool:
        if i < 6:
            barrier.wait()
        failed = 1 if i % 4 == 0 else 0
        return service.increment_and_check_completion(experiment.id, "p1", 1 - failed, failed)

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(worker, range(total)))

    assert outcomes.count(True) == 1
    final = service.get_progress(experiment.id, "p1")
    assert final.completed_items + final.failed_items == total
    assert final.failed_items == total // 4
    assert final.status == "partial"
