"""
Error taxonomy for the evaluation engine.

Extraction and filtering never raise for malformed data; everything below is
for the stateful operations (lifecycle, progress, snapshots) and for hashing.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception carrying a stable code plus structured details."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(EngineError):
    """Entity is absent (or belongs to another tenant)."""

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(EngineError):
    """Illegal state transition, e.g. completing an execution twice."""

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class ValidationFailure(EngineError):
    """Malformed caller input (rule config, counts, pagination)."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InvariantViolation(EngineError):
    """Should never happen: internal consistency check failed."""

    def __init__(self, message: str = "Invariant violated", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVARIANT_VIOLATION", message, details)


class ContentHashError(EngineError):
    """A record could not be canonicalized / serialized for hashing."""

    def __init__(self, message: str = "Record cannot be hashed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONTENT_HASH_ERROR", message, details)


class SelectionLimitError(EngineError):
    """Span selection hit its page cap before finding enough matches."""

    def __init__(self, message: str = "Pagination limit reached", details: Optional[Dict[str, Any]] = None):
        super().__init__("SELECTION_LIMIT", message, details)
