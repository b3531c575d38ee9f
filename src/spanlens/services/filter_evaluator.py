"""
Filter clause evaluation against trace spans.

Fail-closed throughout: unknown operators, invalid regex patterns and values
that cannot be compared numerically all evaluate to False, never True, and
nothing here raises for malformed span data.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Iterable, Optional, Sequence

from spanlens.models.domain import FilterClause, TraceSpan
from spanlens.services.field_extractor import extract_field

logger = logging.getLogger(__name__)

# Fields whose equality checks ignore case (UI sends "error", spans resolve to "Error").
CASE_INSENSITIVE_FIELDS = frozenset({"status"})


def as_text(value: Any) -> str:
    """String form used by the string operators."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def to_number(value: Any) -> Optional[float]:
    """Coerce native numbers and numeric strings; everything else is not comparable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _numeric(check: Callable[[float, float], bool]) -> Callable[[Any, Any, bool], bool]:
    def op(actual: Any, expected: Any, _ci: bool) -> bool:
        a = to_number(actual)
        b = to_number(expected)
        if a is None or b is None:
            return False
        return check(a, b)

    return op


def _equals(actual: Any, expected: Any, case_insensitive: bool) -> bool:
    a, b = as_text(actual), as_text(expected)
    if case_insensitive:
        return a.casefold() == b.casefold()
    return a == b


def _regex(actual: Any, expected: Any, _ci: bool) -> bool:
    pattern = as_text(expected)
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        logger.warning("Invalid regex in filter clause, clause will not match: pattern=%r error=%s", pattern, e)
        return False
    return compiled.search(as_text(actual)) is not None


_OPERATORS: dict[str, Callable[[Any, Any, bool], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, b, ci: not _equals(a, b, ci),
    "contains": lambda a, b, _ci: as_text(b) in as_text(a),
    "not_contains": lambda a, b, _ci: as_text(b) not in as_text(a),
    "starts_with": lambda a, b, _ci: as_text(a).startswith(as_text(b)),
    "ends_with": lambda a, b, _ci: as_text(a).endswith(as_text(b)),
    "regex": _regex,
    "is_empty": lambda a, _b, _ci: a is None or as_text(a) == "",
    "is_not_empty": lambda a, _b, _ci: a is not None and as_text(a) != "",
    "gt": _numeric(lambda a, b: a > b),
    "gte": _numeric(lambda a, b: a >= b),
    "lt": _numeric(lambda a, b: a < b),
    "lte": _numeric(lambda a, b: a <= b),
}

_ALIASES = {"eq": "equals", "neq": "not_equals"}

SUPPORTED_OPERATORS = frozenset(_OPERATORS) | frozenset(_ALIASES)


def evaluate_operator(operator: str, actual: Any, expected: Any, *, case_insensitive: bool = False) -> bool:
    """Apply one operator to an already-extracted value. Unknown operators are False."""
    name = _ALIASES.get(operator, operator)
    op = _OPERATORS.get(name)
    if op is None:
        logger.warning("Unknown filter operator, clause will not match: operator=%r", operator)
        return False
    return op(actual, expected, case_insensitive)


def matches_clause(clause: FilterClause, span: TraceSpan) -> bool:
    value = extract_field(span, clause.field)
    return evaluate_operator(
        clause.operator,
        value,
        clause.value,
        case_insensitive=clause.field in CASE_INSENSITIVE_FIELDS,
    )


def matches_all(span: TraceSpan, clauses: Iterable[FilterClause]) -> bool:
    """AND over all clauses; an empty expression matches everything."""
    return all(matches_clause(clause, span) for clause in clauses)


def matches_span_names(span: TraceSpan, span_names: Sequence[str]) -> bool:
    """No names means no restriction."""
    if not span_names:
        return True
    return span.name in span_names


def describe_filter(clauses: Sequence[FilterClause]) -> str:
    """Human-readable summary, e.g. `status eq "error" AND latency_ms gt 100`."""
    if not clauses:
        return "all spans"
    return " AND ".join(f"{c.field} {c.operator} {json.dumps(c.value, default=str)}" for c in clauses)
