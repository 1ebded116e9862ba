"""Error taxonomy for the analysis pipeline.

Validation, permission, conflict and rate-limit errors are raised
synchronously to the caller. Stage and upstream errors are recorded on the
document or job and only become visible on a later read.
"""

from datetime import datetime
from typing import Any
from uuid import UUID


class ColloquyError(Exception):
    """Base class for all domain errors."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class NotFoundError(ColloquyError):
    code = "not_found"


class ValidationError(ColloquyError):
    """Content failed a readiness gate. Carries every violated rule."""

    code = "validation_error"

    def __init__(self, violations: list[str]):
        super().__init__("; ".join(violations) or "validation failed")
        self.violations = list(violations)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "violations": self.violations}


class IllegalTransition(ColloquyError):
    code = "illegal_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "current": self.current, "target": self.target}


class PermissionDenied(ColloquyError):
    code = "permission_denied"


class ConflictError(ColloquyError):
    """Optimistic concurrency failure: the stored version moved on."""

    code = "conflict"

    def __init__(self, expected_version: int, actual_version: int | None):
        super().__init__(
            f"Expected version {expected_version} but found {actual_version}; reload and retry"
        )
        self.expected_version = expected_version
        self.actual_version = actual_version

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class PreconditionError(ColloquyError):
    """An aggregate was requested with too little input."""

    code = "precondition_failed"

    def __init__(self, message: str, missing: int):
        super().__init__(message)
        self.missing = missing

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "missing": self.missing}


class RateLimitExceeded(ColloquyError):
    code = "rate_limited"

    def __init__(self, operation: str, limit: int, reset_at: datetime):
        super().__init__(f"Rate limit of {limit} for {operation} exceeded")
        self.operation = operation
        self.limit = limit
        self.reset_at = reset_at

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
        }


class StageError(ColloquyError):
    """A background stage could not run or complete for a document."""

    code = "stage_error"

    def __init__(self, message: str, document_id: UUID | None = None, stage: str | None = None):
        super().__init__(message)
        self.document_id = document_id
        self.stage = stage


class UpstreamError(ColloquyError):
    """The AI capability failed, returned nothing usable, or timed out."""

    code = "upstream_error"
