"""Experiments repository."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from spanlens.db.engine import supports_row_locks
from spanlens.db.schema import Experiment


class ExperimentRepository:
    """Repository for experiments table operations (transaction owned by the caller)."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, experiment: Experiment) -> Experiment:
        self.session.add(experiment)
        self.session.flush()
        return experiment

    def get(self, experiment_id: str, project_id: Optional[str] = None, for_update: bool = False) -> Optional[Experiment]:
        stmt = select(Experiment).where(Experiment.id == experiment_id)
        if project_id is not None:
            stmt = stmt.where(Experiment.project_id == project_id)
        if for_update and supports_row_locks(self.session.get_bind()):
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def list_by_project(self, project_id: str) -> List[Experiment]:
        return list(
            self.session.execute(
                select(Experiment)
                .where(Experiment.project_id == project_id)
                .order_by(Experiment.created_at.desc())
            )
            .scalars()
            .all()
        )
