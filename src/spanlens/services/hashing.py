"""
Content hashing for deduplication.

A record is first canonicalized (every mapping becomes a tuple of key/value
pairs sorted by key, at every depth) and only then serialized, so the source
mapping's iteration order can never leak into the digest.
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any

from spanlens.errors import ContentHashError


class CanonicalMap(tuple):
    """Sorted (key, value) pairs standing in for a mapping in canonical form."""

    __slots__ = ()


def _check_text(value: str) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ContentHashError(
            "String is not valid UTF-8 (lone surrogate)",
            details={"value": repr(value)[:200], "position": e.start},
        ) from e
    return value


def canonicalize(record: Any) -> Any:
    """
    Recursive transform to canonical form.

    - mappings -> CanonicalMap sorted by key (keys must be strings)
    - lists/tuples -> tuples, order kept (order is data)
    - integral floats -> int, so values decoded as 1.0 and 1 hash alike
    - strings must encode as UTF-8; lone surrogates are rejected
    """
    if isinstance(record, dict):
        pairs = []
        for key, value in record.items():
            if not isinstance(key, str):
                raise ContentHashError(
                    f"Mapping keys must be strings, got {type(key).__name__}",
                    details={"key": repr(key)},
                )
            pairs.append((_check_text(key), canonicalize(value)))
        pairs.sort(key=lambda kv: kv[0])
        return CanonicalMap(pairs)

    if isinstance(record, (list, tuple)):
        return tuple(canonicalize(v) for v in record)

    if isinstance(record, str):
        return _check_text(record)

    if record is None or isinstance(record, (bool, int)):
        return record

    if isinstance(record, float):
        if math.isnan(record) or math.isinf(record):
            raise ContentHashError("NaN/Infinity cannot be serialized", details={"value": repr(record)})
        if record.is_integer():
            return int(record)
        return record

    raise ContentHashError(
        f"Unsupported type for hashing: {type(record).__name__}",
        details={"value": repr(record)[:200]},
    )


def _encode(node: Any) -> str:
    if isinstance(node, CanonicalMap):
        body = ",".join(f"{json.dumps(k, ensure_ascii=False)}:{_encode(v)}" for k, v in node)
        return "{" + body + "}"
    if isinstance(node, tuple):
        return "[" + ",".join(_encode(v) for v in node) + "]"
    return json.dumps(node, ensure_ascii=False, allow_nan=False)


def canonical_json(record: Any) -> str:
    """Compact JSON text of the canonical form."""
    return _encode(canonicalize(record))


def content_hash(record: Any) -> str:
    """SHA-256 hex digest (64 chars) of the canonical serialization."""
    payload = canonical_json(record)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_item_hash(input_data: Any, expected: Any = None) -> str:
    """Dedup key for a dataset item: hash over its input and expected output."""
    return content_hash({"input": input_data, "expected": expected})
