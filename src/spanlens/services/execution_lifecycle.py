"""
Execution lifecycle: pending -> running -> completed | failed | cancelled.

The transition functions mutate an Execution row in place and raise
ConflictError (leaving the row untouched) when the move is not allowed.
ExecutionService wraps them in locked transactions.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from spanlens.db.locking import keyed_lock
from spanlens.db.schema import Execution, utcnow
from spanlens.db.session import SessionFactory, transaction
from spanlens.errors import ConflictError, NotFoundError, ValidationFailure
from spanlens.models.domain import EXECUTION_TERMINAL_STATUSES, ExecutionStatus, TriggerType
from spanlens.repos.executions_repo import ExecutionRepository
from spanlens.services.progress import (
    EXECUTION_COLUMNS,
    SqlCounterStore,
    decide_execution_status,
    increment_and_maybe_complete,
)

logger = logging.getLogger(__name__)

LOCK_TABLE = "executions"


def _require(execution: Execution, allowed: Tuple[str, ...], action: str) -> None:
    if execution.status in EXECUTION_TERMINAL_STATUSES:
        raise ConflictError(
            f"Cannot {action} execution in terminal status {execution.status}",
            details={"execution_id": execution.id, "status": execution.status},
        )
    if execution.status not in allowed:
        raise ConflictError(
            f"Cannot {action} execution in status {execution.status}",
            details={"execution_id": execution.id, "status": execution.status, "allowed": list(allowed)},
        )


def _finish(execution: Execution, status: ExecutionStatus, now: datetime) -> None:
    execution.status = status.value
    execution.completed_at = now
    if execution.started_at is not None:
        execution.duration_ms = int((now - execution.started_at).total_seconds() * 1000)


def start(execution: Execution, now: Optional[datetime] = None) -> None:
    _require(execution, (ExecutionStatus.PENDING.value,), "start")
    execution.status = ExecutionStatus.RUNNING.value
    execution.started_at = now or utcnow()


def _check_counts(**counts: Optional[int]) -> None:
    negative = {k: v for k, v in counts.items() if v is not None and v < 0}
    if negative:
        raise ValidationFailure("Execution counters must be non-negative", details=negative)


def complete(
    execution: Execution,
    spans_matched: Optional[int] = None,
    spans_scored: Optional[int] = None,
    errors_count: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """Running -> completed. Counters given here replace the stored ones; None keeps them."""
    _check_counts(spans_matched=spans_matched, spans_scored=spans_scored, errors_count=errors_count)
    _require(execution, (ExecutionStatus.RUNNING.value,), "complete")
    if spans_matched is not None:
        execution.spans_matched = spans_matched
    if spans_scored is not None:
        execution.spans_scored = spans_scored
    if errors_count is not None:
        execution.errors_count = errors_count
    _finish(execution, ExecutionStatus.COMPLETED, now or utcnow())


def fail(execution: Execution, error_message: str, now: Optional[datetime] = None) -> None:
    _require(execution, (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value), "fail")
    _finish(execution, ExecutionStatus.FAILED, now or utcnow())
    execution.error_message = error_message


def cancel(execution: Execution, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
    _require(execution, (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value), "cancel")
    _finish(execution, ExecutionStatus.CANCELLED, now or utcnow())
    if reason:
        execution.error_message = reason


class ExecutionService:
    """Transactional execution operations; all reads/writes are tenant scoped by project_id."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def _counters(self, project_id: str) -> SqlCounterStore:
        return SqlCounterStore(
            self.session_factory, ExecutionRepository, EXECUTION_COLUMNS, LOCK_TABLE, project_id=project_id
        )

    def _transition(self, execution_id: str, project_id: str, apply: Callable[[Execution], None]) -> Execution:
        with keyed_lock(LOCK_TABLE, execution_id):
            with transaction(self.session_factory) as session:
                execution = ExecutionRepository(session).get(execution_id, project_id, for_update=True)
                if execution is None:
                    raise NotFoundError(f"Execution not found: {execution_id}", details={"execution_id": execution_id})
                apply(execution)
        logger.info("Execution %s: status=%s duration_ms=%s", execution_id, execution.status, execution.duration_ms)
        return execution

    def start_execution(
        self,
        rule_id: str,
        project_id: str,
        trigger_type: str = TriggerType.MANUAL.value,
        spans_matched: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """Create a run and move it straight to running."""
        if spans_matched is not None and spans_matched < 0:
            raise ValidationFailure("spans_matched must be non-negative", details={"spans_matched": spans_matched})
        try:
            trigger = TriggerType(trigger_type).value
        except ValueError:
            raise ValidationFailure(f"Unknown trigger type: {trigger_type}", details={"trigger_type": trigger_type})

        with transaction(self.session_factory) as session:
            execution = Execution(
                rule_id=rule_id,
                project_id=project_id,
                trigger_type=trigger,
                status=ExecutionStatus.PENDING.value,
                spans_matched=spans_matched or 0,
                spans_scored=0,
                errors_count=0,
                metadata_json=json.dumps(metadata) if metadata else None,
            )
            start(execution)
            ExecutionRepository(session).create(execution)

        logger.info(
            "Execution started: id=%s rule_id=%s project_id=%s trigger=%s spans_matched=%d",
            execution.id,
            rule_id,
            project_id,
            trigger,
            execution.spans_matched,
        )
        return execution

    def complete_execution(
        self,
        execution_id: str,
        project_id: str,
        spans_matched: Optional[int] = None,
        spans_scored: Optional[int] = None,
        errors_count: Optional[int] = None,
    ) -> Execution:
        _check_counts(spans_matched=spans_matched, spans_scored=spans_scored, errors_count=errors_count)
        return self._transition(
            execution_id,
            project_id,
            lambda e: complete(e, spans_matched, spans_scored, errors_count),
        )

    def fail_execution(self, execution_id: str, project_id: str, error_message: str) -> Execution:
        return self._transition(execution_id, project_id, lambda e: fail(e, error_message))

    def cancel_execution(self, execution_id: str, project_id: str, reason: Optional[str] = None) -> Execution:
        return self._transition(execution_id, project_id, lambda e: cancel(e, reason))

    def get(self, execution_id: str, project_id: str) -> Execution:
        with transaction(self.session_factory) as session:
            execution = ExecutionRepository(session).get(execution_id, project_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {execution_id}", details={"execution_id": execution_id})
        return execution

    def list_by_rule(
        self,
        rule_id: str,
        project_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Execution], int]:
        if page < 1 or limit < 1:
            raise ValidationFailure("page and limit must be positive", details={"page": page, "limit": limit})
        with transaction(self.session_factory) as session:
            return ExecutionRepository(session).list_by_rule(rule_id, project_id, status=status, page=page, limit=limit)

    def get_latest_by_rule(self, rule_id: str, project_id: str) -> Optional[Execution]:
        with transaction(self.session_factory) as session:
            return ExecutionRepository(session).latest_by_rule(rule_id, project_id)

    def update_spans_matched(self, execution_id: str, project_id: str, spans_matched: int) -> Execution:
        """Set the completion target; must happen before any job for the run is emitted."""
        if spans_matched < 0:
            raise ValidationFailure("spans_matched must be non-negative", details={"spans_matched": spans_matched})

        def apply(execution: Execution) -> None:
            if execution.status in EXECUTION_TERMINAL_STATUSES:
                raise ConflictError(
                    f"Cannot update target of execution in terminal status {execution.status}",
                    details={"execution_id": execution_id, "status": execution.status},
                )
            execution.spans_matched = spans_matched

        return self._transition(execution_id, project_id, apply)

    def increment_counters(self, execution_id: str, project_id: str, scored_delta: int, errors_delta: int) -> None:
        """Add to the counters without a completion check. Missing executions are logged and skipped."""
        if scored_delta < 0 or errors_delta < 0:
            raise ValidationFailure(
                "Counter deltas must be non-negative",
                details={"scored_delta": scored_delta, "errors_delta": errors_delta},
            )
        with self._counters(project_id).locked(execution_id) as counter:
            state = counter.state
            if state is None:
                logger.warning(
                    "Execution not found while incrementing counters: id=%s project_id=%s", execution_id, project_id
                )
                return
            if state.status in EXECUTION_TERMINAL_STATUSES:
                logger.warning("Ignoring counters for terminal execution: id=%s status=%s", execution_id, state.status)
                return
            counter.write(replace(state, completed=state.completed + scored_delta, failed=state.failed + errors_delta))

    def increment_and_check_completion(
        self, execution_id: str, project_id: str, scored_delta: int, errors_delta: int
    ) -> bool:
        """
        Record worker outcomes and complete the execution when all matched spans are processed.

        Returns True for exactly one caller: the one whose increment completed the run.
        """
        try:
            result = increment_and_maybe_complete(
                self._counters(project_id),
                execution_id,
                scored_delta,
                errors_delta,
                decide_execution_status,
            )
        except NotFoundError:
            logger.warning(
                "Execution not found while checking completion: id=%s project_id=%s", execution_id, project_id
            )
            return False
        return result.is_now_complete
