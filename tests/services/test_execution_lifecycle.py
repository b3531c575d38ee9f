"""Tests for execution lifecycle transitions and ExecutionService."""

from datetime import datetime, timedelta

import pytest

from spanlens.db.schema import Execution
from spanlens.errors import ConflictError, NotFoundError, ValidationFailure
from spanlens.services import execution_lifecycle as lifecycle
from spanlens.services.execution_lifecycle import ExecutionService

T0 = datetime(2024, 1, 1, 10, 0, 0)


def _execution(status: str = "pending") -> Execution:
    return Execution(
        id="ex1",
        rule_id="r1",
        project_id="p1",
        trigger_type="manual",
        status=status,
        spans_matched=0,
        spans_scored=0,
        errors_count=0,
    )


def test_start_then_complete_records_duration():
    execution = _execution()
    lifecycle.start(execution, now=T0)
    assert execution.status == "running"
    assert execution.started_at == T0

    lifecycle.complete(execution, now=T0 + timedelta(seconds=2, milliseconds=500))
    assert execution.status == "completed"
    assert execution.duration_ms == 2500
    assert execution.completed_at == T0 + timedelta(seconds=2, milliseconds=500)


def test_complete_requires_running():
    execution = _execution()
    with pytest.raises(ConflictError):
        lifecycle.complete(execution)
    assert execution.status == "pending"


def test_cancel_pending_has_no_duration():
    execution = _execution()
    lifecycle.cancel(execution, reason="user abort", now=T0)
    assert execution.status == "cancelled"
    assert execution.duration_ms is None
    assert execution.error_message == "user abort"


def test_fail_records_message():
    execution = _execution()
    lifecycle.start(execution, now=T0)
    lifecycle.fail(execution, "span store unavailable", now=T0 + timedelta(milliseconds=10))
    assert execution.status == "failed"
    assert execution.error_message == "span store unavailable"
    assert execution.duration_ms == 10


@pytest.mark.parametrize("terminal", ["completed", "failed", "cancelled"])
@pytest.mark.parametrize("action", ["start", "complete", "fail", "cancel"])
def test_terminal_states_reject_every_transition(terminal, action):
    execution = _execution(status=terminal)
    execution.completed_at = T0
    calls = {
        "start": lambda: lifecycle.start(execution),
        "complete": lambda: lifecycle.complete(execution),
        "fail": lambda: lifecycle.fail(execution, "boom"),
        "cancel": lambda: lifecycle.cancel(execution),
    }
    with pytest.raises(ConflictError):
        calls[action]()
    assert execution.status == terminal
    assert execution.completed_at == T0
    assert execution.error_message is None


def test_service_start_and_complete(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1", "manual", spans_matched=3)
    assert execution.status == "running"
    assert execution.started_at is not None

    done = service.complete_execution(execution.id, "p1")
    assert done.status == "completed"
    assert done.duration_ms is not None and done.duration_ms >= 0

    with pytest.raises(ConflictError):
        service.complete_execution(execution.id, "p1")
    assert service.get(execution.id, "p1").status == "completed"


def test_service_is_tenant_scoped(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1")
    with pytest.raises(NotFoundError):
        service.get(execution.id, "other-project")
    with pytest.raises(NotFoundError):
        service.cancel_execution(execution.id, "other-project")


def test_complete_execution_records_final_counters(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1", spans_matched=2)

    done = service.complete_execution(execution.id, "p1", spans_matched=5, spans_scored=4, errors_count=1)
    assert (done.spans_matched, done.spans_scored, done.errors_count) == (5, 4, 1)

    stored = service.get(execution.id, "p1")
    assert stored.status == "completed"
    assert (stored.spans_matched, stored.spans_scored, stored.errors_count) == (5, 4, 1)


def test_complete_execution_rejects_negative_counters(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1", spans_matched=2)
    with pytest.raises(ValidationFailure):
        service.complete_execution(execution.id, "p1", spans_scored=-1)

    stored = service.get(execution.id, "p1")
    assert stored.status == "running"
    assert stored.spans_matched == 2


def test_complete_keeps_counters_left_unset():
    execution = _execution("running")
    execution.spans_matched = 7
    lifecycle.complete(execution, spans_scored=6, now=T0)
    assert (execution.spans_matched, execution.spans_scored, execution.errors_count) == (7, 6, 0)


def test_counters_ignore_other_tenants(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "tenant-a", spans_matched=2)

    assert service.increment_and_check_completion(execution.id, "tenant-b", 1, 0) is False
    assert service.increment_and_check_completion(execution.id, "tenant-b", 1, 0) is False
    service.increment_counters(execution.id, "tenant-b", 1, 0)

    untouched = service.get(execution.id, "tenant-a")
    assert untouched.status == "running"
    assert (untouched.spans_scored, untouched.errors_count) == (0, 0)

    service.increment_and_check_completion(execution.id, "tenant-a", 1, 0)
    assert service.increment_and_check_completion(execution.id, "tenant-a", 1, 0) is True


def test_service_rejects_bad_input(session_factory):
    service = ExecutionService(session_factory)
    with pytest.raises(ValidationFailure):
        service.start_execution("r1", "p1", "scheduled")
    with pytest.raises(ValidationFailure):
        service.start_execution("r1", "p1", spans_matched=-1)


def test_increment_and_check_completion(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1")
    service.update_spans_matched(execution.id, "p1", 3)

    assert service.increment_and_check_completion(execution.id, "p1", 1, 0) is False
    assert service.increment_and_check_completion(execution.id, "p1", 1, 0) is False
    assert service.increment_and_check_completion(execution.id, "p1", 0, 1) is True
    assert service.increment_and_check_completion(execution.id, "p1", 1, 0) is False

    final = service.get(execution.id, "p1")
    assert final.status == "completed"
    assert (final.spans_scored, final.errors_count) == (2, 1)
    assert final.completed_at is not None
    assert final.duration_ms is not None


def test_all_errors_fail_the_execution(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1", spans_matched=2)
    service.increment_and_check_completion(execution.id, "p1", 0, 1)
    assert service.increment_and_check_completion(execution.id, "p1", 0, 1) is True
    assert service.get(execution.id, "p1").status == "failed"


def test_increment_counters_without_completion(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1", spans_matched=1)
    service.increment_counters(execution.id, "p1", 1, 0)

    current = service.get(execution.id, "p1")
    assert current.spans_scored == 1
    assert current.status == "running"


def test_missing_execution_is_swallowed(session_factory, caplog):
    service = ExecutionService(session_factory)
    service.increment_counters("missing", "p1", 1, 0)
    assert service.increment_and_check_completion("missing", "p1", 1, 0) is False
    assert "not found" in caplog.text


def test_update_spans_matched_rejects_terminal(session_factory):
    service = ExecutionService(session_factory)
    execution = service.start_execution("r1", "p1")
    service.cancel_execution(execution.id, "p1")
    with pytest.raises(ConflictError):
        service.update_spans_matched(execution.id, "p1", 5)


def test_list_and_latest_by_rule(session_factory):
    service = ExecutionService(session_factory)
    ids = [service.start_execution("r1", "p1").id for _ in range(3)]
    service.start_execution("r2", "p1")
    service.cancel_execution(ids[0], "p1")

    rows, total = service.list_by_rule("r1", "p1", page=1, limit=2)
    assert total == 3
    assert len(rows) == 2

    cancelled, cancelled_total = service.list_by_rule("r1", "p1", status="cancelled")
    assert cancelled_total == 1
    assert cancelled[0].id == ids[0]

    latest = service.get_latest_by_rule("r1", "p1")
    assert latest is not None and latest.rule_id == "r1"
    assert service.get_latest_by_rule("r-none", "p1") is None
