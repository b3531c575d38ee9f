"""
Span selection for evaluation runs.

Span names and time range are pushed down to the reader; filter clauses are
applied in memory, page by page, until enough spans match.
"""

from __future__ import annotations

import logging
import random
from typing import List, Optional, Protocol, Sequence, Tuple

from spanlens.errors import SelectionLimitError, ValidationFailure
from spanlens.models.domain import FilterClause, SpanFilter, TraceSpan
from spanlens.services.filter_evaluator import matches_all, matches_span_names

logger = logging.getLogger(__name__)


class SpanReader(Protocol):
    def get_by_id(self, span_id: str, project_id: str) -> Optional[TraceSpan]:
        ...

    def get_by_filter_page(self, span_filter: SpanFilter, page: int, limit: int) -> Tuple[List[TraceSpan], int]:
        ...


def select_matching_spans(
    reader: SpanReader,
    span_filter: SpanFilter,
    clauses: Sequence[FilterClause],
    limit: int,
    max_pages: int = 0,
    page_size: Optional[int] = None,
) -> List[TraceSpan]:
    """
    Up to `limit` spans matching every clause.

    max_pages=0 means no cap. When the cap is reached with fewer than `limit`
    matches and more data may exist, SelectionLimitError is raised rather than
    returning a silently truncated selection.
    """
    if limit < 1:
        raise ValidationFailure("limit must be positive", details={"limit": limit})
    page_size = page_size or limit

    if not clauses:
        spans, _total = reader.get_by_filter_page(span_filter, 1, limit)
        return spans[:limit]

    matched: List[TraceSpan] = []
    page = 1
    while max_pages == 0 or page <= max_pages:
        spans, total = reader.get_by_filter_page(span_filter, page, page_size)
        if not spans:
            return matched

        for span in spans:
            if matches_all(span, clauses):
                matched.append(span)
                if len(matched) >= limit:
                    return matched

        if len(spans) < page_size or page * page_size >= total:
            return matched

        if page % 10 == 0:
            logger.debug("Span selection paging: page=%d matched=%d target=%d", page, len(matched), limit)
        page += 1

    raise SelectionLimitError(
        f"Scanned {max_pages} pages but only found {len(matched)}/{limit} matching spans; "
        "narrow the span names or time range, or raise the page cap",
        details={"max_pages": max_pages, "matched": len(matched), "limit": limit},
    )


def fetch_spans_by_ids(
    reader: SpanReader,
    project_id: str,
    span_ids: Sequence[str],
    span_names: Sequence[str] = (),
    clauses: Sequence[FilterClause] = (),
) -> List[TraceSpan]:
    """Explicit span ids bypass paging and time range; missing spans are skipped."""
    spans: List[TraceSpan] = []
    for span_id in span_ids:
        span = reader.get_by_id(span_id, project_id)
        if span is None:
            logger.warning("Span not found, skipping: span_id=%s project_id=%s", span_id, project_id)
            continue
        spans.append(span)
    return [s for s in spans if matches_span_names(s, span_names) and matches_all(s, clauses)]


def apply_sampling(
    spans: Sequence[TraceSpan],
    rate: float,
    limit: int,
    rng: Optional[random.Random] = None,
) -> List[TraceSpan]:
    """
    Keep each span with probability `rate`, stopping at `limit`.

    A rate outside (0, 1) disables sampling and only the limit applies.
    """
    if not 0.0 < rate < 1.0:
        return list(spans[:limit])
    rng = rng or random.Random()
    sampled: List[TraceSpan] = []
    for span in spans:
        if rng.random() < rate:
            sampled.append(span)
            if len(sampled) >= limit:
                break
    return sampled
