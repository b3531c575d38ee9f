from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class StatusCode(str, Enum):
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


class TriggerType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


EXECUTION_TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value, ExecutionStatus.CANCELLED.value}
)


class ExperimentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


EXPERIMENT_TERMINAL_STATUSES = frozenset(
    {
        ExperimentStatus.COMPLETED.value,
        ExperimentStatus.FAILED.value,
        ExperimentStatus.PARTIAL.value,
        ExperimentStatus.CANCELLED.value,
    }
)


class VariableSource(str, Enum):
    SPAN_INPUT = "span_input"
    SPAN_OUTPUT = "span_output"
    SPAN_METADATA = "span_metadata"
    TRACE_INPUT = "trace_input"


@dataclass(frozen=True)
class TraceSpan:
    """
    One observed unit of work, as read from the tracing store.

    input/output are raw strings that may themselves hold JSON documents.
    duration_ns is nanoseconds; usage_details maps "input"/"output"/"total" to token counts.
    """

    span_id: str
    trace_id: str
    name: str
    parent_span_id: Optional[str] = None
    project_id: Optional[str] = None
    kind: Optional[str] = None
    input: Optional[str] = None
    output: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    resource_attributes: dict[str, Any] = field(default_factory=dict)
    model_name: Optional[str] = None
    provider_name: Optional[str] = None
    service_name: Optional[str] = None
    status_code: StatusCode = StatusCode.UNSET
    has_error: bool = False
    duration_ns: Optional[int] = None
    usage_details: dict[str, int] = field(default_factory=dict)
    start_time: Optional[datetime] = None


class FilterClause(BaseModel):
    """
    One (field, operator, value) condition.

    operator stays a free string: unknown operators must reach the evaluator
    (which rejects them) instead of failing validation upstream.
    """

    model_config = ConfigDict(frozen=True)

    field: str
    operator: str
    value: Any = None


class VariableMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    variable_name: str
    source: str
    json_path: str = ""


class RuleConfig(BaseModel):
    """Filter + variable configuration of a rule/evaluator as consumed by the engine."""

    filter: list[FilterClause] = Field(default_factory=list)
    span_names: list[str] = Field(default_factory=list)
    variable_mapping: list[VariableMapping] = Field(default_factory=list)
    sampling_rate: float = Field(1.0, ge=0.0, le=1.0)


@dataclass(frozen=True)
class ResolvedVariable:
    name: str
    source: str
    path: str
    value: Any
    # True when the value came from an approximation (trace input read from the span itself).
    approximated: bool = False


@dataclass(frozen=True)
class SpanFilter:
    """Storage-level span query (pushed down to the span reader)."""

    project_id: str
    span_names: tuple[str, ...] = ()
    trace_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass(frozen=True)
class CounterState:
    """Snapshot of a tracked entity's progress counters, read under lock."""

    entity_id: str
    status: str
    total: int
    completed: int
    failed: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.completed + self.failed


@dataclass(frozen=True)
class ProgressResult:
    is_now_complete: bool
    state: Optional[CounterState]


@dataclass(frozen=True)
class ExperimentProgress:
    experiment_id: str
    status: str
    total_items: int
    completed_items: int
    failed_items: int
    pending_items: int
    progress_pct: float
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    elapsed_seconds: Optional[float] = None
    eta_seconds: Optional[float] = None


@dataclass(frozen=True)
class ImportResult:
    created: int
    skipped: int
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EvaluationJob:
    """Work unit handed to the (external) scoring workers."""

    job_id: str
    rule_id: str
    project_id: str
    execution_id: str
    span_id: str
    trace_id: str
    span_data: dict[str, Any]
    variables: dict[str, str]
    created_at: datetime


class KeysMapping(BaseModel):
    """Picks input/expected/metadata keys out of raw import records."""

    model_config = ConfigDict(frozen=True)

    input_keys: list[str] = Field(default_factory=list)
    expected_keys: list[str] = Field(default_factory=list)
    metadata_keys: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.input_keys or self.expected_keys or self.metadata_keys)


DATASET_ITEM_SOURCES = frozenset({"manual", "trace", "span", "csv", "json", "sdk"})
