"""Span store repository: the SQL-backed span reader and trace root lookup."""

from __future__ import annotations

import json
from typing import Any, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from spanlens.db.schema import Span
from spanlens.models.domain import SpanFilter, StatusCode, TraceSpan


def _load_map(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _dump_map(value: dict[str, Any]) -> Optional[str]:
    return json.dumps(value, default=str) if value else None


def to_trace_span(row: Span) -> TraceSpan:
    try:
        status = StatusCode(row.status_code)
    except ValueError:
        status = StatusCode.UNSET
    return TraceSpan(
        span_id=row.span_id,
        trace_id=row.trace_id,
        name=row.name,
        parent_span_id=row.parent_span_id,
        project_id=row.project_id,
        kind=row.kind,
        input=row.input,
        output=row.output,
        attributes=_load_map(row.attributes_json),
        resource_attributes=_load_map(row.resource_attributes_json),
        model_name=row.model_name,
        provider_name=row.provider_name,
        service_name=row.service_name,
        status_code=status,
        has_error=bool(row.has_error),
        duration_ns=row.duration_ns,
        usage_details=_load_map(row.usage_json),
        start_time=row.start_time,
    )


def to_row(span: TraceSpan) -> Span:
    row = Span(
        span_id=span.span_id,
        trace_id=span.trace_id,
        parent_span_id=span.parent_span_id,
        project_id=span.project_id or "",
        name=span.name,
        kind=span.kind,
        input=span.input,
        output=span.output,
        attributes_json=_dump_map(span.attributes),
        resource_attributes_json=_dump_map(span.resource_attributes),
        model_name=span.model_name,
        provider_name=span.provider_name,
        service_name=span.service_name,
        status_code=StatusCode(span.status_code).value,
        has_error=span.has_error,
        duration_ns=span.duration_ns,
        usage_json=_dump_map(span.usage_details),
    )
    if span.start_time is not None:
        row.start_time = span.start_time
    return row


class SpanRepository:
    """Reads spans as TraceSpan values; storage-level filters are pushed into SQL."""

    def __init__(self, session: Session):
        self.session = session

    def add_span(self, span: TraceSpan) -> None:
        self.session.add(to_row(span))
        self.session.flush()

    def get_by_id(self, span_id: str, project_id: str) -> Optional[TraceSpan]:
        row = self.session.execute(
            select(Span).where(Span.span_id == span_id, Span.project_id == project_id)
        ).scalar_one_or_none()
        return to_trace_span(row) if row is not None else None

    def get_by_filter_page(self, span_filter: SpanFilter, page: int, limit: int) -> Tuple[List[TraceSpan], int]:
        """One page (1-based) of spans, newest first, with the unpaged total."""
        where = [Span.project_id == span_filter.project_id]
        if span_filter.span_names:
            where.append(Span.name.in_(list(span_filter.span_names)))
        if span_filter.trace_id is not None:
            where.append(Span.trace_id == span_filter.trace_id)
        if span_filter.start_time is not None:
            where.append(Span.start_time >= span_filter.start_time)
        if span_filter.end_time is not None:
            where.append(Span.start_time <= span_filter.end_time)

        total = self.session.execute(select(func.count()).select_from(Span).where(*where)).scalar_one()
        rows = (
            self.session.execute(
                select(Span)
                .where(*where)
                .order_by(Span.start_time.desc(), Span.span_id)
                .limit(limit)
                .offset((page - 1) * limit)
            )
            .scalars()
            .all()
        )
        return [to_trace_span(r) for r in rows], int(total)

    def get_root_span(self, trace_id: str, project_id: Optional[str] = None) -> Optional[TraceSpan]:
        stmt = select(Span).where(Span.trace_id == trace_id, Span.parent_span_id.is_(None))
        if project_id is not None:
            stmt = stmt.where(Span.project_id == project_id)
        row = self.session.execute(stmt.order_by(Span.start_time).limit(1)).scalars().first()
        return to_trace_span(row) if row is not None else None
