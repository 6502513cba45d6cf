"""Exception taxonomy for workflow, persistence and search failures."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class ExamflowError(Exception):
    """Base class for every error raised by the package."""


class WorkflowError(ExamflowError):
    """A stage operation was refused; carries a user-facing message."""

    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details or None}


class OutOfOrderError(WorkflowError):
    """The requested stage is not the one following the record's current stage."""

    status_code = 409
    code = "out_of_order"


class PermissionDeniedError(WorkflowError):
    """The actor lacks the capability required for the requested stage."""

    status_code = 403
    code = "permission_denied"


class ValidationError(WorkflowError):
    """Required payload fields are missing or empty."""

    status_code = 422
    code = "validation_failed"

    def __init__(self, fields: Sequence[str], *, stage: Optional[str] = None) -> None:
        self.fields = list(fields)
        joined = ", ".join(self.fields)
        message = f"Missing required fields: {joined}"
        details: Dict[str, Any] = {"fields": self.fields}
        if stage:
            details["stage"] = stage
        super().__init__(message, details=details)


class DuplicateAdmissionError(WorkflowError):
    """An exam record already exists for the admission id."""

    status_code = 409
    code = "duplicate_admission"


class RecordNotFoundError(WorkflowError):
    status_code = 404
    code = "not_found"


class StoreUnavailableError(WorkflowError):
    """A persistence call failed or the change stream was lost."""

    status_code = 503
    code = "store_unavailable"


class SearchDegradedError(ExamflowError):
    """Remote search cannot serve the query; callers fall back to a local scan."""


class SessionClosedError(ExamflowError):
    """The session context was used after logout."""


__all__ = [
    "ExamflowError",
    "WorkflowError",
    "OutOfOrderError",
    "PermissionDeniedError",
    "ValidationError",
    "DuplicateAdmissionError",
    "RecordNotFoundError",
    "StoreUnavailableError",
    "SearchDegradedError",
    "SessionClosedError",
]
