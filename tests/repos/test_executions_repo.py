"""Unit tests for ExecutionRepository and ExperimentRepository."""

from datetime import datetime, timedelta

import pytest

from spanlens.db.schema import Execution, Experiment
from spanlens.repos.executions_repo import ExecutionRepository
from spanlens.repos.experiments_repo import ExperimentRepository

T0 = datetime(2024, 2, 1, 8, 0, 0)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


def _execution(i, rule_id="r1", project_id="p1", status="running") -> Execution:
    return Execution(
        rule_id=rule_id,
        project_id=project_id,
        trigger_type="manual",
        status=status,
        created_at=T0 + timedelta(minutes=i),
    )


def test_create_assigns_id_and_defaults(session):
    execution = ExecutionRepository(session).create(_execution(0))
    assert execution.id
    assert (execution.spans_matched, execution.spans_scored, execution.errors_count) == (0, 0, 0)


def test_get_filters_by_project(session):
    repo = ExecutionRepository(session)
    execution = repo.create(_execution(0))
    assert repo.get(execution.id, "p1") is execution
    assert repo.get(execution.id, "p2") is None
    assert repo.get(execution.id, for_update=True) is execution


def test_list_by_rule_pages_newest_first(session):
    repo = ExecutionRepository(session)
    created = [repo.create(_execution(i, status="completed" if i % 2 else "running")) for i in range(5)]
    repo.create(_execution(9, rule_id="r2"))

    rows, total = repo.list_by_rule("r1", "p1", page=1, limit=2)
    assert total == 5
    assert [r.id for r in rows] == [created[4].id, created[3].id]

    rows, _ = repo.list_by_rule("r1", "p1", page=3, limit=2)
    assert [r.id for r in rows] == [created[0].id]

    completed, total = repo.list_by_rule("r1", "p1", status="completed")
    assert total == 2

    assert repo.latest_by_rule("r1", "p1").id == created[4].id
    assert repo.latest_by_rule("r1", "p2") is None


def test_experiment_repository(session):
    repo = ExperimentRepository(session)
    older = repo.create(Experiment(project_id="p1", name="baseline", status="pending", created_at=T0))
    newer = repo.create(
        Experiment(project_id="p1", name="candidate", status="pending", created_at=T0 + timedelta(hours=1))
    )
    repo.create(Experiment(project_id="p2", name="other", status="pending"))

    assert repo.get(older.id, "p1") is older
    assert repo.get(older.id, "p2") is None
    assert [e.id for e in repo.list_by_project("p1")] == [newer.id, older.id]
    assert older.total_items == 0
