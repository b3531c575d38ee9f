"""Executions repository."""

from __future__ import annotations

from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from spanlens.db.engine import supports_row_locks
from spanlens.db.schema import Execution


class ExecutionRepository:
    """
    Repository for executions table operations.

    Never commits: the calling service owns the transaction, so a lock taken by
    get(..., for_update=True) is held until the service's commit.
    """

    def __init__(self, session: Session):
        self.session = session

    def create(self, execution: Execution) -> Execution:
        self.session.add(execution)
        self.session.flush()
        return execution

    def get(self, execution_id: str, project_id: Optional[str] = None, for_update: bool = False) -> Optional[Execution]:
        stmt = select(Execution).where(Execution.id == execution_id)
        if project_id is not None:
            stmt = stmt.where(Execution.project_id == project_id)
        if for_update and supports_row_locks(self.session.get_bind()):
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def list_by_rule(
        self,
        rule_id: str,
        project_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Execution], int]:
        """Newest first, with the unpaged total."""
        where = [Execution.rule_id == rule_id, Execution.project_id == project_id]
        if status is not None:
            where.append(Execution.status == status)

        total = self.session.execute(
            select(func.count()).select_from(Execution).where(*where)
        ).scalar_one()

        rows = (
            self.session.execute(
                select(Execution)
                .where(*where)
                .order_by(Execution.created_at.desc(), Execution.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            .scalars()
            .all()
        )
        return list(rows), int(total)

    def latest_by_rule(self, rule_id: str, project_id: str) -> Optional[Execution]:
        return (
            self.session.execute(
                select(Execution)
                .where(Execution.rule_id == rule_id, Execution.project_id == project_id)
                .order_by(Execution.created_at.desc(), Execution.id.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )
