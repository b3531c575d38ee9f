"""Experiment runs over dataset items: lifecycle, progress counters and progress reporting."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from spanlens.db.locking import keyed_lock
from spanlens.db.schema import Experiment, utcnow
from spanlens.db.session import SessionFactory, transaction
from spanlens.errors import ConflictError, NotFoundError, ValidationFailure
from spanlens.models.domain import EXPERIMENT_TERMINAL_STATUSES, ExperimentProgress, ExperimentStatus
from spanlens.repos.experiments_repo import ExperimentRepository
from spanlens.services.progress import (
    EXPERIMENT_COLUMNS,
    SqlCounterStore,
    decide_experiment_status,
    increment_and_maybe_complete,
)

logger = logging.getLogger(__name__)

LOCK_TABLE = "experiments"


def build_progress(experiment: Experiment, now: datetime) -> ExperimentProgress:
    """Derived progress fields; elapsed/ETA only for running experiments."""
    total = experiment.total_items
    processed = experiment.completed_items + experiment.failed_items
    pct = processed / total * 100 if total > 0 else 0.0

    elapsed: Optional[float] = None
    eta: Optional[float] = None
    if experiment.started_at is not None and experiment.status == ExperimentStatus.RUNNING.value:
        elapsed = (now - experiment.started_at).total_seconds()
        if processed > 0 and total > processed:
            eta = elapsed / processed * (total - processed)

    return ExperimentProgress(
        experiment_id=experiment.id,
        status=experiment.status,
        total_items=total,
        completed_items=experiment.completed_items,
        failed_items=experiment.failed_items,
        pending_items=total - processed,
        progress_pct=pct,
        started_at=experiment.started_at,
        completed_at=experiment.completed_at,
        elapsed_seconds=elapsed,
        eta_seconds=eta,
    )


class ExperimentService:
    def __init__(self, session_factory: SessionFactory, now_fn: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.now_fn = now_fn

    def _counters(self, project_id: str) -> SqlCounterStore:
        return SqlCounterStore(self.session_factory, ExperimentRepository, EXPERIMENT_COLUMNS, LOCK_TABLE, project_id)

    def _update(self, experiment_id: str, project_id: str, apply: Callable[[Experiment], None]) -> Experiment:
        with keyed_lock(LOCK_TABLE, experiment_id):
            with transaction(self.session_factory) as session:
                experiment = ExperimentRepository(session).get(experiment_id, project_id, for_update=True)
                if experiment is None:
                    raise NotFoundError(f"Experiment not found: {experiment_id}", details={"experiment_id": experiment_id})
                apply(experiment)
        return experiment

    def create(
        self,
        project_id: str,
        name: str,
        dataset_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Experiment:
        if not name or not name.strip():
            raise ValidationFailure("Experiment name is required")
        with transaction(self.session_factory) as session:
            experiment = ExperimentRepository(session).create(
                Experiment(
                    project_id=project_id,
                    dataset_id=dataset_id,
                    name=name.strip(),
                    status=ExperimentStatus.PENDING.value,
                    total_items=0,
                    completed_items=0,
                    failed_items=0,
                    metadata_json=json.dumps(metadata) if metadata else None,
                )
            )
        logger.info("Experiment created: id=%s project_id=%s name=%s", experiment.id, project_id, experiment.name)
        return experiment

    def start(self, experiment_id: str, project_id: str) -> Experiment:
        def apply(experiment: Experiment) -> None:
            if experiment.status != ExperimentStatus.PENDING.value:
                raise ConflictError(
                    f"Cannot start experiment in status {experiment.status}",
                    details={"experiment_id": experiment_id, "status": experiment.status},
                )
            experiment.status = ExperimentStatus.RUNNING.value
            experiment.started_at = self.now_fn()

        experiment = self._update(experiment_id, project_id, apply)
        logger.info("Experiment started: id=%s total_items=%d", experiment_id, experiment.total_items)
        return experiment

    def set_total_items(self, experiment_id: str, project_id: str, total: int) -> Experiment:
        if total < 0:
            raise ValidationFailure("total_items must be non-negative", details={"total_items": total})

        def apply(experiment: Experiment) -> None:
            experiment.total_items = total

        return self._update(experiment_id, project_id, apply)

    def cancel(self, experiment_id: str, project_id: str) -> Experiment:
        def apply(experiment: Experiment) -> None:
            if experiment.status in EXPERIMENT_TERMINAL_STATUSES:
                raise ConflictError(
                    f"Cannot cancel experiment in terminal status {experiment.status}",
                    details={"experiment_id": experiment_id, "status": experiment.status},
                )
            experiment.status = ExperimentStatus.CANCELLED.value
            experiment.completed_at = self.now_fn()

        experiment = self._update(experiment_id, project_id, apply)
        logger.info("Experiment cancelled: id=%s", experiment_id)
        return experiment

    def increment_progress(self, experiment_id: str, project_id: str, completed: int, failed: int) -> None:
        """Add to the counters without a completion check."""
        if completed < 0 or failed < 0:
            raise ValidationFailure(
                "Progress deltas must be non-negative", details={"completed": completed, "failed": failed}
            )
        with self._counters(project_id).locked(experiment_id) as counter:
            state = counter.state
            if state is None:
                raise NotFoundError(f"Experiment not found: {experiment_id}", details={"experiment_id": experiment_id})
            if state.status in EXPERIMENT_TERMINAL_STATUSES:
                logger.warning("Ignoring progress for terminal experiment: id=%s status=%s", experiment_id, state.status)
                return
            counter.write(replace(state, completed=state.completed + completed, failed=state.failed + failed))

    def increment_and_check_completion(self, experiment_id: str, project_id: str, completed: int, failed: int) -> bool:
        """True only for the caller whose increment finished the experiment."""
        try:
            result = increment_and_maybe_complete(
                self._counters(project_id),
                experiment_id,
                completed,
                failed,
                decide_experiment_status,
                now_fn=self.now_fn,
            )
        except NotFoundError as e:
            raise NotFoundError(f"Experiment not found: {experiment_id}", details={"experiment_id": experiment_id}) from e

        if result.is_now_complete:
            logger.info(
                "Experiment completed: id=%s project_id=%s status=%s",
                experiment_id,
                project_id,
                result.state.status if result.state else None,
            )
        return result.is_now_complete

    def get(self, experiment_id: str, project_id: str) -> Experiment:
        with transaction(self.session_factory) as session:
            experiment = ExperimentRepository(session).get(experiment_id, project_id)
        if experiment is None:
            raise NotFoundError(f"Experiment not found: {experiment_id}", details={"experiment_id": experiment_id})
        return experiment

    def list_experiments(self, project_id: str) -> List[Experiment]:
        with transaction(self.session_factory) as session:
            return ExperimentRepository(session).list_by_project(project_id)

    def get_progress(self, experiment_id: str, project_id: str) -> ExperimentProgress:
        return build_progress(self.get(experiment_id, project_id), self.now_fn())
