"""
Dot-path field extraction over trace spans.

extract_field is total: every path resolves to a value or None, and nothing
in here raises for malformed span data.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Optional

from spanlens.models.domain import StatusCode, TraceSpan

_NS_PER_MS = 1_000_000.0

_MISSING = object()


def _parse_json(raw: Any) -> Any:
    if not isinstance(raw, (str, bytes, bytearray)):
        return _MISSING
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return _MISSING


def walk_path(data: Any, path: list[str]) -> Any:
    """
    Walk path segments through nested maps.

    String values met along the way are parsed as embedded JSON documents
    when segments remain; anything that is not a map at that point yields None.
    """
    current = data
    for segment in path:
        if isinstance(current, (str, bytes, bytearray)):
            parsed = _parse_json(current)
            if parsed is _MISSING:
                return None
            current = parsed
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def _payload(raw: Optional[str], rest: list[str]) -> Any:
    if raw is None:
        return None
    if not rest:
        return raw
    return walk_path(raw, rest)


def _map_lookup(mapping: Optional[dict], rest: list[str]) -> Any:
    if not isinstance(mapping, dict):
        return None
    if not rest:
        return mapping
    # attribute keys routinely contain dots ("gen_ai.system"), so the remainder is one key
    return mapping.get(".".join(rest))


def span_status(span: TraceSpan) -> str:
    """Title-case status as shown in the UI: "OK" or "Error"."""
    if span.status_code == StatusCode.OK:
        return "OK"
    if span.status_code == StatusCode.ERROR:
        return "Error"
    return "Error" if span.has_error else "OK"


def _latency_ms(span: TraceSpan) -> Optional[float]:
    if not isinstance(span.duration_ns, (int, float)) or isinstance(span.duration_ns, bool):
        return None
    return span.duration_ns / _NS_PER_MS


def _total_tokens(span: TraceSpan) -> Optional[int]:
    usage = span.usage_details
    if not isinstance(usage, dict) or not usage:
        return None
    if "total" in usage:
        return usage["total"]
    parts = [usage.get("input"), usage.get("output")]
    total = sum(p for p in parts if isinstance(p, (int, float)) and not isinstance(p, bool))
    return total if total > 0 else None


def _usage(key: str) -> Callable[[TraceSpan], Any]:
    return lambda span: span.usage_details.get(key) if isinstance(span.usage_details, dict) else None


_SCALAR_FIELDS: dict[str, Callable[[TraceSpan], Any]] = {
    "name": lambda s: s.name,
    "span_name": lambda s: s.name,
    "kind": lambda s: s.kind,
    "span_kind": lambda s: s.kind,
    "model": lambda s: s.model_name,
    "model_name": lambda s: s.model_name,
    "provider": lambda s: s.provider_name,
    "provider_name": lambda s: s.provider_name,
    "service": lambda s: s.service_name,
    "service_name": lambda s: s.service_name,
    "span_id": lambda s: s.span_id,
    "trace_id": lambda s: s.trace_id,
    "parent_span_id": lambda s: s.parent_span_id,
    "status": span_status,
    "latency_ms": _latency_ms,
    "latency": _latency_ms,
    "duration_ms": _latency_ms,
    "total_tokens": _total_tokens,
    "token_count": _total_tokens,
    "input_tokens": _usage("input"),
    "output_tokens": _usage("output"),
}

_ATTRIBUTE_ROOTS = ("attributes", "span_attributes", "metadata")


def extract_field(span: TraceSpan, path: str) -> Any:
    """
    Resolve a dot path such as "input.user.name" or "attributes.latency_ms".

    Returns None for unknown roots, missing keys and unparseable payloads.
    """
    if not path:
        return None

    head, *rest = path.split(".")

    if head == "input":
        return _payload(span.input, rest)
    if head == "output":
        return _payload(span.output, rest)
    if head in _ATTRIBUTE_ROOTS:
        return _map_lookup(span.attributes, rest)
    if head == "resource_attributes":
        return _map_lookup(span.resource_attributes, rest)

    getter = _SCALAR_FIELDS.get(head)
    if getter is None or rest:
        return None
    return getter(span)
