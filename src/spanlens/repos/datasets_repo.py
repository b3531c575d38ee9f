"""Dataset, dataset item and dataset version repositories."""

from __future__ import annotations

from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from spanlens.db.engine import supports_row_locks
from spanlens.db.schema import Dataset, DatasetItem, DatasetVersion, DatasetVersionItem


class DatasetRepository:
    """Repository for datasets table operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, dataset: Dataset) -> Dataset:
        self.session.add(dataset)
        self.session.flush()
        return dataset

    def get(self, dataset_id: str, project_id: Optional[str] = None, for_update: bool = False) -> Optional[Dataset]:
        stmt = select(Dataset).where(Dataset.id == dataset_id)
        if project_id is not None:
            stmt = stmt.where(Dataset.project_id == project_id)
        if for_update and supports_row_locks(self.session.get_bind()):
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()


class DatasetItemRepository:
    """Repository for dataset_items table operations."""

    def __init__(self, session: Session):
        self.session = session

    def create_batch(self, items: Iterable[DatasetItem]) -> int:
        rows = list(items)
        if not rows:
            return 0
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    def get(self, item_id: str, dataset_id: str) -> Optional[DatasetItem]:
        return self.session.execute(
            select(DatasetItem).where(DatasetItem.id == item_id, DatasetItem.dataset_id == dataset_id)
        ).scalar_one_or_none()

    def list_all(self, dataset_id: str) -> List[DatasetItem]:
        return list(
            self.session.execute(
                select(DatasetItem)
                .where(DatasetItem.dataset_id == dataset_id)
                .order_by(DatasetItem.created_at, DatasetItem.id)
            )
            .scalars()
            .all()
        )

    def list_page(self, dataset_id: str, limit: int, offset: int) -> Tuple[List[DatasetItem], int]:
        total = self.session.execute(
            select(func.count()).select_from(DatasetItem).where(DatasetItem.dataset_id == dataset_id)
        ).scalar_one()
        rows = (
            self.session.execute(
                select(DatasetItem)
                .where(DatasetItem.dataset_id == dataset_id)
                .order_by(DatasetItem.created_at, DatasetItem.id)
                .limit(limit)
                .offset(offset)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    def find_by_content_hashes(self, dataset_id: str, hashes: Iterable[str]) -> Set[str]:
        """Subset of `hashes` already present in the dataset."""
        wanted = sorted(set(hashes))
        if not wanted:
            return set()
        found = self.session.execute(
            select(DatasetItem.content_hash).where(
                DatasetItem.dataset_id == dataset_id,
                DatasetItem.content_hash.in_(wanted),
            )
        ).scalars()
        return set(found)

    def delete(self, item_id: str, dataset_id: str) -> bool:
        """
        Delete one item. DuckDB does NOT reliably return rowcount for DELETE,
        so existence is checked explicitly first.
        """
        if self.get(item_id, dataset_id) is None:
            return False
        self.session.execute(
            delete(DatasetItem).where(DatasetItem.id == item_id, DatasetItem.dataset_id == dataset_id)
        )
        return True


class DatasetVersionRepository:
    """Repository for dataset_versions / dataset_version_items."""

    def __init__(self, session: Session):
        self.session = session

    def next_version_number(self, dataset_id: str) -> int:
        current = self.session.execute(
            select(func.coalesce(func.max(DatasetVersion.version), 0)).where(DatasetVersion.dataset_id == dataset_id)
        ).scalar_one()
        return int(current) + 1

    def create(self, version: DatasetVersion) -> DatasetVersion:
        self.session.add(version)
        self.session.flush()
        return version

    def add_items(self, version_id: str, items: Iterable[DatasetItem]) -> int:
        rows = [
            DatasetVersionItem(
                version_id=version_id,
                item_id=item.id,
                content_hash=item.content_hash,
                input_json=item.input_json,
                expected_json=item.expected_json,
                metadata_json=item.metadata_json,
                item_created_at=item.created_at,
            )
            for item in items
        ]
        if rows:
            self.session.add_all(rows)
            self.session.flush()
        return len(rows)

    def count_items(self, version_id: str) -> int:
        return int(
            self.session.execute(
                select(func.count()).select_from(DatasetVersionItem).where(DatasetVersionItem.version_id == version_id)
            ).scalar_one()
        )

    def get(self, version_id: str, dataset_id: str) -> Optional[DatasetVersion]:
        return self.session.execute(
            select(DatasetVersion).where(DatasetVersion.id == version_id, DatasetVersion.dataset_id == dataset_id)
        ).scalar_one_or_none()

    def list(self, dataset_id: str) -> List[DatasetVersion]:
        return list(
            self.session.execute(
                select(DatasetVersion)
                .where(DatasetVersion.dataset_id == dataset_id)
                .order_by(DatasetVersion.version.desc())
            )
            .scalars()
            .all()
        )

    def latest(self, dataset_id: str) -> Optional[DatasetVersion]:
        return (
            self.session.execute(
                select(DatasetVersion)
                .where(DatasetVersion.dataset_id == dataset_id)
                .order_by(DatasetVersion.version.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )

    def get_items(self, version_id: str, limit: int, offset: int) -> Tuple[List[DatasetVersionItem], int]:
        total = self.count_items(version_id)
        rows = (
            self.session.execute(
                select(DatasetVersionItem)
                .where(DatasetVersionItem.version_id == version_id)
                .order_by(DatasetVersionItem.item_created_at, DatasetVersionItem.item_id)
                .limit(limit)
                .offset(offset)
            )
            .scalars()
            .all()
        )
        return list(rows), total
