"""Template variable resolution from span data."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol, Sequence

from spanlens.models.domain import ResolvedVariable, TraceSpan, VariableMapping, VariableSource
from spanlens.services.field_extractor import extract_field

logger = logging.getLogger(__name__)

# Source -> extractor root path.
_SOURCE_ROOTS = {
    VariableSource.SPAN_INPUT.value: "input",
    VariableSource.SPAN_OUTPUT.value: "output",
    VariableSource.SPAN_METADATA.value: "attributes",
    "span_attributes": "attributes",
    VariableSource.TRACE_INPUT.value: "input",
}


class TraceRootLookup(Protocol):
    """Finds the root span of a trace (the span whose input is the trace input)."""

    def get_root_span(self, trace_id: str, project_id: Optional[str] = None) -> Optional[TraceSpan]:
        ...


def _path_for(root: str, json_path: str) -> str:
    json_path = (json_path or "").strip(".")
    return f"{root}.{json_path}" if json_path else root


def _trace_root(span: TraceSpan, lookup: Optional[TraceRootLookup]) -> Optional[TraceSpan]:
    if span.parent_span_id is None:
        return span
    if lookup is None:
        return None
    try:
        return lookup.get_root_span(span.trace_id, span.project_id)
    except Exception as e:  # collaborator failure must not abort resolution
        logger.warning("Trace root lookup failed, falling back to span input: trace_id=%s error=%s", span.trace_id, e)
        return None


def resolve_variable(
    mapping: VariableMapping,
    span: TraceSpan,
    trace_root_lookup: Optional[TraceRootLookup] = None,
) -> ResolvedVariable:
    root = _SOURCE_ROOTS.get(mapping.source)
    if root is None:
        logger.warning("Unknown variable source: variable=%s source=%r", mapping.variable_name, mapping.source)
        return ResolvedVariable(mapping.variable_name, mapping.source, mapping.json_path, None)

    path = _path_for(root, mapping.json_path)

    if mapping.source == VariableSource.TRACE_INPUT.value:
        root_span = _trace_root(span, trace_root_lookup)
        if root_span is not None:
            return ResolvedVariable(mapping.variable_name, mapping.source, mapping.json_path, extract_field(root_span, path))
        # No root span available: approximate with the span's own input and say so.
        return ResolvedVariable(
            mapping.variable_name,
            mapping.source,
            mapping.json_path,
            extract_field(span, path),
            approximated=True,
        )

    return ResolvedVariable(mapping.variable_name, mapping.source, mapping.json_path, extract_field(span, path))


def resolve_variables(
    mappings: Sequence[VariableMapping],
    span: TraceSpan,
    trace_root_lookup: Optional[TraceRootLookup] = None,
) -> list[ResolvedVariable]:
    """One entry per mapping, in input order; value is None when extraction fails."""
    return [resolve_variable(m, span, trace_root_lookup) for m in mappings]


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def render_variables(resolved: Sequence[ResolvedVariable]) -> dict[str, str]:
    """Template-ready map: strings as-is, other values as JSON, unresolved ones omitted."""
    out: dict[str, str] = {}
    for var in resolved:
        text = _stringify(var.value)
        if text is not None:
            out[var.name] = text
    return out
