"""Unit tests for the dataset repositories."""

from datetime import datetime, timedelta

import pytest

from spanlens.db.schema import Dataset, DatasetItem, DatasetVersion
from spanlens.repos.datasets_repo import DatasetItemRepository, DatasetRepository, DatasetVersionRepository

T0 = datetime(2024, 4, 1, 12, 0, 0)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def dataset(session):
    return DatasetRepository(session).create(Dataset(project_id="p1", name="qa"))


def _item(dataset_id, i) -> DatasetItem:
    return DatasetItem(
        dataset_id=dataset_id,
        input_json=f'{{"q": {i}}}',
        content_hash=f"h{i}",
        created_at=T0 + timedelta(seconds=i),
    )


def test_dataset_get_is_tenant_scoped(session, dataset):
    repo = DatasetRepository(session)
    assert repo.get(dataset.id, "p1") is dataset
    assert repo.get(dataset.id, "p2") is None


def test_items_crud(session, dataset):
    repo = DatasetItemRepository(session)
    assert repo.create_batch([]) == 0
    assert repo.create_batch([_item(dataset.id, i) for i in range(5)]) == 5

    assert [i.content_hash for i in repo.list_all(dataset.id)] == ["h0", "h1", "h2", "h3", "h4"]
    page, total = repo.list_page(dataset.id, limit=2, offset=2)
    assert total == 5
    assert [i.content_hash for i in page] == ["h2", "h3"]

    assert repo.find_by_content_hashes(dataset.id, ["h1", "h4", "h9"]) == {"h1", "h4"}
    assert repo.find_by_content_hashes(dataset.id, []) == set()

    victim = repo.list_all(dataset.id)[0]
    assert repo.delete(victim.id, dataset.id) is True
    assert repo.delete(victim.id, dataset.id) is False
    assert len(repo.list_all(dataset.id)) == 4


def test_versions(session, dataset):
    items = DatasetItemRepository(session)
    items.create_batch([_item(dataset.id, i) for i in range(3)])
    versions = DatasetVersionRepository(session)

    assert versions.next_version_number(dataset.id) == 1
    assert versions.latest(dataset.id) is None

    v1 = versions.create(DatasetVersion(dataset_id=dataset.id, version=1, item_count=3))
    assert versions.add_items(v1.id, items.list_all(dataset.id)) == 3
    assert versions.count_items(v1.id) == 3
    assert versions.next_version_number(dataset.id) == 2

    v2 = versions.create(DatasetVersion(dataset_id=dataset.id, version=2, item_count=0))
    assert versions.add_items(v2.id, []) == 0

    assert [v.version for v in versions.list(dataset.id)] == [2, 1]
    assert versions.latest(dataset.id).id == v2.id
    assert versions.get(v1.id, dataset.id) is v1
    assert versions.get(v1.id, "other-dataset") is None

    rows, total = versions.get_items(v1.id, limit=2, offset=1)
    assert total == 3
    assert [r.content_hash for r in rows] == ["h1", "h2"]
    assert rows[0].input_json == '{"q": 1}'
