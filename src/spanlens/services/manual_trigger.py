"""
Manual trigger processing: run a rule over historical spans.

Order matters. The execution's target (spans_matched) is written before the
first job is emitted; otherwise a fast worker could report progress against a
target of 0 and complete the execution early.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from spanlens.config.settings import settings
from spanlens.db.schema import utcnow
from spanlens.models.domain import EvaluationJob, FilterClause, SpanFilter, TraceSpan, VariableMapping
from spanlens.services.execution_lifecycle import ExecutionService
from spanlens.services.span_selection import SpanReader, apply_sampling, fetch_spans_by_ids, select_matching_spans
from spanlens.services.variable_resolver import TraceRootLookup, render_variables, resolve_variables

logger = logging.getLogger(__name__)

DEFAULT_TIME_RANGE = timedelta(hours=24)

JobSink = Callable[[EvaluationJob], None]


class ManualTrigger(BaseModel):
    """One manual run request for an execution that has already been started."""

    execution_id: str
    rule_id: str
    project_id: str
    filter: List[FilterClause] = Field(default_factory=list)
    span_names: List[str] = Field(default_factory=list)
    variable_mapping: List[VariableMapping] = Field(default_factory=list)
    sampling_rate: float = Field(1.0, ge=0.0, le=1.0)
    sample_limit: int = Field(default_factory=lambda: settings.default_sample_limit, ge=1)
    span_ids: List[str] = Field(default_factory=list)
    time_range_start: Optional[datetime] = None
    time_range_end: Optional[datetime] = None


@dataclass(frozen=True)
class TriggerOutcome:
    spans_matched: int
    jobs_enqueued: int
    enqueue_errors: int


def build_span_data(span: TraceSpan) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "input": span.input,
        "output": span.output,
        "span_attributes": dict(span.attributes),
        "span_kind": span.kind,
        "name": span.name,
    }
    model = span.attributes.get("gen_ai.response.model", span.model_name)
    provider = span.attributes.get("gen_ai.system", span.provider_name)
    if model is not None:
        data["model"] = model
    if provider is not None:
        data["provider"] = provider
    return data


class ManualTriggerProcessor:
    def __init__(
        self,
        executions: ExecutionService,
        reader: SpanReader,
        sink: JobSink,
        trace_root_lookup: Optional[TraceRootLookup] = None,
        max_filter_pages: Optional[int] = None,
        page_size: Optional[int] = None,
        rng: Optional[random.Random] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.executions = executions
        self.reader = reader
        self.sink = sink
        self.trace_root_lookup = trace_root_lookup
        self.max_filter_pages = settings.max_filter_pages if max_filter_pages is None else max_filter_pages
        self.page_size = page_size or settings.filter_page_size
        self.rng = rng
        self.now_fn = now_fn

    def _span_filter(self, trigger: ManualTrigger) -> SpanFilter:
        return SpanFilter(
            project_id=trigger.project_id,
            span_names=tuple(trigger.span_names),
            start_time=trigger.time_range_start or self.now_fn() - DEFAULT_TIME_RANGE,
            end_time=trigger.time_range_end,
        )

    def _select(self, trigger: ManualTrigger) -> List[TraceSpan]:
        if trigger.span_ids:
            return fetch_spans_by_ids(
                self.reader, trigger.project_id, trigger.span_ids, trigger.span_names, trigger.filter
            )
        return select_matching_spans(
            self.reader,
            self._span_filter(trigger),
            trigger.filter,
            limit=trigger.sample_limit,
            max_pages=self.max_filter_pages,
            page_size=self.page_size,
        )

    def _job(self, trigger: ManualTrigger, span: TraceSpan) -> EvaluationJob:
        resolved = resolve_variables(trigger.variable_mapping, span, self.trace_root_lookup)
        return EvaluationJob(
            job_id=str(uuid4()),
            rule_id=trigger.rule_id,
            project_id=trigger.project_id,
            execution_id=trigger.execution_id,
            span_id=span.span_id,
            trace_id=span.trace_id,
            span_data=build_span_data(span),
            variables=render_variables(resolved),
            created_at=self.now_fn(),
        )

    def process(self, trigger: ManualTrigger) -> TriggerOutcome:
        logger.info(
            "Processing manual trigger: execution_id=%s rule_id=%s project_id=%s sample_limit=%d",
            trigger.execution_id,
            trigger.rule_id,
            trigger.project_id,
            trigger.sample_limit,
        )

        try:
            spans = self._select(trigger)
        except Exception as e:
            self.executions.fail_execution(trigger.execution_id, trigger.project_id, str(e))
            raise

        spans_matched = len(spans)
        if spans_matched == 0:
            self.executions.complete_execution(trigger.execution_id, trigger.project_id, 0, 0, 0)
            logger.info("Manual trigger matched no spans: execution_id=%s", trigger.execution_id)
            return TriggerOutcome(0, 0, 0)

        sampled = apply_sampling(spans, trigger.sampling_rate, trigger.sample_limit, self.rng)
        if not sampled:
            self.executions.complete_execution(trigger.execution_id, trigger.project_id, 0, 0, 0)
            logger.info(
                "Manual trigger sampled zero spans: execution_id=%s pre_sampling_matches=%d",
                trigger.execution_id,
                spans_matched,
            )
            return TriggerOutcome(spans_matched, 0, 0)

        self.executions.update_spans_matched(trigger.execution_id, trigger.project_id, len(sampled))

        enqueued = 0
        errors = 0
        for span in sampled:
            try:
                self.sink(self._job(trigger, span))
            except Exception as e:
                logger.error("Failed to emit evaluation job: span_id=%s error=%s", span.span_id, e)
                errors += 1
                continue
            enqueued += 1

        if errors:
            # enqueue failures count as processed so scored + errors can still reach the target
            self.executions.increment_and_check_completion(trigger.execution_id, trigger.project_id, 0, errors)
            if enqueued == 0:
                logger.error("All %d job enqueue attempts failed: execution_id=%s", errors, trigger.execution_id)

        logger.info(
            "Manual trigger jobs enqueued: execution_id=%s spans_matched=%d jobs_enqueued=%d enqueue_errors=%d",
            trigger.execution_id,
            spans_matched,
            enqueued,
            errors,
        )
        return TriggerOutcome(spans_matched, enqueued, errors)
