"""Dataset and dataset item ingestion, with content-hash deduplication."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from spanlens.db.locking import keyed_lock
from spanlens.db.schema import Dataset, DatasetItem
from spanlens.db.session import SessionFactory, transaction
from spanlens.errors import ContentHashError, NotFoundError, ValidationFailure
from spanlens.models.domain import DATASET_ITEM_SOURCES, ImportResult, KeysMapping
from spanlens.repos.datasets_repo import DatasetItemRepository, DatasetRepository
from spanlens.services.dataset_versions import LOCK_TABLE
from spanlens.services.hashing import compute_item_hash

logger = logging.getLogger(__name__)


def _as_map(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {"value": value}


def extract_item_fields(
    raw: Dict[str, Any],
    mapping: Optional[KeysMapping] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    """
    Split a raw record into (input, expected, metadata).

    Without a mapping the "input"/"expected"/"metadata" keys are used, and a
    record with no "input" key becomes the input itself (minus expected/metadata).
    Non-map values are wrapped as {"value": ...}.
    """
    if mapping is None or mapping.is_empty:
        if "input" in raw:
            input_data = _as_map(raw["input"])
        else:
            input_data = {k: v for k, v in raw.items() if k not in ("expected", "metadata")}
        expected = _as_map(raw["expected"]) if "expected" in raw else {}
        metadata = _as_map(raw["metadata"]) if "metadata" in raw else {}
        return input_data, expected, metadata

    def pick(keys: Sequence[str]) -> Dict[str, Any]:
        return {k: raw[k] for k in keys if k in raw}

    return pick(mapping.input_keys), pick(mapping.expected_keys), pick(mapping.metadata_keys)


def _item_hash(input_data: Dict[str, Any], expected: Dict[str, Any]) -> str:
    return compute_item_hash(input_data, expected or None)


def _build_item(
    dataset_id: str,
    input_data: Dict[str, Any],
    expected: Dict[str, Any],
    metadata: Dict[str, Any],
    content_hash: str,
    source: str,
) -> DatasetItem:
    return DatasetItem(
        dataset_id=dataset_id,
        input_json=json.dumps(input_data, sort_keys=True),
        expected_json=json.dumps(expected, sort_keys=True) if expected else None,
        metadata_json=json.dumps(metadata, sort_keys=True) if metadata else None,
        content_hash=content_hash,
        source=source,
    )


class DatasetItemService:
    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    @staticmethod
    def _require_dataset(session, dataset_id: str, project_id: str) -> Dataset:
        dataset = DatasetRepository(session).get(dataset_id, project_id)
        if dataset is None:
            raise NotFoundError(f"Dataset not found: {dataset_id}", details={"dataset_id": dataset_id})
        return dataset

    def create_dataset(self, project_id: str, name: str, description: Optional[str] = None) -> Dataset:
        if not name or not name.strip():
            raise ValidationFailure("Dataset name is required")
        with transaction(self.session_factory) as session:
            dataset = DatasetRepository(session).create(
                Dataset(project_id=project_id, name=name.strip(), description=description)
            )
        logger.info("Dataset created: id=%s project_id=%s name=%s", dataset.id, project_id, dataset.name)
        return dataset

    def create_item(
        self,
        dataset_id: str,
        project_id: str,
        input_data: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        source: str = "manual",
    ) -> DatasetItem:
        if not isinstance(input_data, dict) or not input_data:
            raise ValidationFailure("Item input must be a non-empty object")
        if source not in DATASET_ITEM_SOURCES:
            raise ValidationFailure(f"Unknown item source: {source}", details={"source": source})

        expected = expected or {}
        item = _build_item(dataset_id, input_data, expected, metadata or {}, _item_hash(input_data, expected), source)

        with keyed_lock(LOCK_TABLE, dataset_id):
            with transaction(self.session_factory) as session:
                self._require_dataset(session, dataset_id, project_id)
                DatasetItemRepository(session).create_batch([item])

        logger.info("Dataset item created: item_id=%s dataset_id=%s", item.id, dataset_id)
        return item

    def import_items(
        self,
        dataset_id: str,
        project_id: str,
        raw_items: Sequence[Any],
        deduplicate: bool = True,
        keys_mapping: Optional[KeysMapping] = None,
        source: str = "json",
    ) -> ImportResult:
        """
        Bulk import. Bad records are reported in ImportResult.errors and skipped;
        with deduplicate, records whose hash already exists (in the dataset or
        earlier in the same batch) are counted as skipped.
        """
        if not raw_items:
            raise ValidationFailure("items array cannot be empty")
        if source not in DATASET_ITEM_SOURCES:
            raise ValidationFailure(f"Unknown item source: {source}", details={"source": source})

        prepared: List[Tuple[int, Dict[str, Any], Dict[str, Any], Dict[str, Any], str]] = []
        errors: List[str] = []
        for i, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                errors.append(f"items[{i}]: must be an object")
                continue
            input_data, expected, metadata = extract_item_fields(raw, keys_mapping)
            if not input_data:
                errors.append(f"items[{i}]: input is required")
                continue
            try:
                digest = _item_hash(input_data, expected)
            except ContentHashError as e:
                errors.append(f"items[{i}]: {e.message}")
                continue
            prepared.append((i, input_data, expected, metadata, digest))

        skipped = 0
        with keyed_lock(LOCK_TABLE, dataset_id):
            with transaction(self.session_factory) as session:
                self._require_dataset(session, dataset_id, project_id)
                repo = DatasetItemRepository(session)

                seen = set()
                if deduplicate:
                    seen = repo.find_by_content_hashes(dataset_id, [p[4] for p in prepared])

                items: List[DatasetItem] = []
                for _i, input_data, expected, metadata, digest in prepared:
                    if deduplicate and digest in seen:
                        skipped += 1
                        continue
                    seen.add(digest)
                    items.append(_build_item(dataset_id, input_data, expected, metadata, digest, source))

                created = repo.create_batch(items)

        logger.info(
            "Dataset items imported: dataset_id=%s created=%d skipped=%d errors=%d",
            dataset_id,
            created,
            skipped,
            len(errors),
        )
        return ImportResult(created=created, skipped=skipped, errors=errors)

    def list_items(
        self,
        dataset_id: str,
        project_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[DatasetItem], int]:
        if limit < 1 or offset < 0:
            raise ValidationFailure("limit must be positive and offset non-negative", details={"limit": limit, "offset": offset})
        with transaction(self.session_factory) as session:
            self._require_dataset(session, dataset_id, project_id)
            return DatasetItemRepository(session).list_page(dataset_id, limit, offset)

    def delete_item(self, dataset_id: str, project_id: str, item_id: str) -> None:
        with keyed_lock(LOCK_TABLE, dataset_id):
            with transaction(self.session_factory) as session:
                self._require_dataset(session, dataset_id, project_id)
                if not DatasetItemRepository(session).delete(item_id, dataset_id):
                    raise NotFoundError(f"Dataset item not found: {item_id}", details={"item_id": item_id})
        logger.info("Dataset item deleted: item_id=%s dataset_id=%s", item_id, dataset_id)
