"""
Dataset version snapshots.

A version freezes the dataset's item set at one point in time. Creating it is
a single transaction under the dataset lock, so two concurrent snapshots get
distinct version numbers and every version row agrees with its item rows.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from spanlens.db.locking import keyed_lock
from spanlens.db.schema import Dataset, DatasetVersion, DatasetVersionItem
from spanlens.db.session import SessionFactory, transaction
from spanlens.errors import InvariantViolation, NotFoundError, ValidationFailure
from spanlens.repos.datasets_repo import DatasetItemRepository, DatasetRepository, DatasetVersionRepository

logger = logging.getLogger(__name__)

LOCK_TABLE = "datasets"


class DatasetVersionService:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    @staticmethod
    def _dataset(session, dataset_id: str, project_id: str, for_update: bool = False) -> Dataset:
        dataset = DatasetRepository(session).get(dataset_id, project_id, for_update=for_update)
        if dataset is None:
            raise NotFoundError(f"Dataset not found: {dataset_id}", details={"dataset_id": dataset_id})
        return dataset

    def create_version(
        self,
        dataset_id: str,
        project_id: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DatasetVersion:
        with keyed_lock(LOCK_TABLE, dataset_id):
            with transaction(self.session_factory) as session:
                self._dataset(session, dataset_id, project_id, for_update=True)

                versions = DatasetVersionRepository(session)
                items = DatasetItemRepository(session).list_all(dataset_id)

                version = versions.create(
                    DatasetVersion(
                        dataset_id=dataset_id,
                        version=versions.next_version_number(dataset_id),
                        item_count=len(items),
                        description=description,
                        metadata_json=json.dumps(metadata) if metadata else None,
                    )
                )
                versions.add_items(version.id, items)

                stored = versions.count_items(version.id)
                if stored != version.item_count:
                    raise InvariantViolation(
                        "Version item count does not match stored item rows",
                        details={"version_id": version.id, "item_count": version.item_count, "stored": stored},
                    )

        logger.info(
            "Dataset version created: dataset_id=%s version=%d item_count=%d",
            dataset_id,
            version.version,
            version.item_count,
        )
        return version

    def get_version(self, dataset_id: str, project_id: str, version_id: str) -> DatasetVersion:
        with transaction(self.session_factory) as session:
            self._dataset(session, dataset_id, project_id)
            version = DatasetVersionRepository(session).get(version_id, dataset_id)
        if version is None:
            raise NotFoundError(f"Dataset version not found: {version_id}", details={"version_id": version_id})
        return version

    def list_versions(self, dataset_id: str, project_id: str) -> List[DatasetVersion]:
        """Newest version first."""
        with transaction(self.session_factory) as session:
            self._dataset(session, dataset_id, project_id)
            return DatasetVersionRepository(session).list(dataset_id)

    def get_latest_version(self, dataset_id: str, project_id: str) -> Optional[DatasetVersion]:
        with transaction(self.session_factory) as session:
            self._dataset(session, dataset_id, project_id)
            return DatasetVersionRepository(session).latest(dataset_id)

    def get_version_items(
        self,
        dataset_id: str,
        project_id: str,
        version_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[DatasetVersionItem], int]:
        if limit < 1 or offset < 0:
            raise ValidationFailure("limit must be positive and offset non-negative", details={"limit": limit, "offset": offset})
        with transaction(self.session_factory) as session:
            self._dataset(session, dataset_id, project_id)
            versions = DatasetVersionRepository(session)
            if versions.get(version_id, dataset_id) is None:
                raise NotFoundError(f"Dataset version not found: {version_id}", details={"version_id": version_id})
            return versions.get_items(version_id, limit, offset)

    def pin_version(self, dataset_id: str, project_id: str, version_id: Optional[str]) -> Dataset:
        """Pin the dataset to a version; None goes back to the live items."""
        with keyed_lock(LOCK_TABLE, dataset_id):
            with transaction(self.session_factory) as session:
                dataset = self._dataset(session, dataset_id, project_id, for_update=True)
                if version_id is not None and DatasetVersionRepository(session).get(version_id, dataset_id) is None:
                    raise NotFoundError(f"Dataset version not found: {version_id}", details={"version_id": version_id})
                dataset.current_version_id = version_id
        logger.info("Dataset pinned: dataset_id=%s version_id=%s", dataset_id, version_id)
        return dataset
