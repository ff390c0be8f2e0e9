"""Exception hierarchy for tracker operations.

Core services raise these; the tool layer converts them into response-v2
error envelopes with :func:`error_from_exception`.
"""

from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING

from tracker_mcp.core.responses import (
    ErrorCode,
    ErrorType,
    ToolResponse,
    error_response,
)

if TYPE_CHECKING:
    from tracker_mcp.core.batch_operations import BatchReport


class TrackerError(Exception):
    """Base class for tracker errors.

    Attributes:
        message: Human-readable description
        code: Canonical error code
        error_type: Error category for routing
        details: Machine-readable context
        remediation: Guidance for the caller
    """

    default_code = ErrorCode.INTERNAL_ERROR
    error_type = ErrorType.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[Mapping[str, Any]] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: Dict[str, Any] = dict(details or {})
        self.remediation = remediation


class NotFoundError(TrackerError):
    """Target entity is absent from the store."""

    default_code = ErrorCode.NOT_FOUND
    error_type = ErrorType.NOT_FOUND

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        *,
        code: Optional[ErrorCode] = None,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"{resource_type} '{resource_id}' not found",
            code=code,
            details={"resource_type": resource_type, "resource_id": resource_id},
            remediation=f"Verify the {resource_type.lower()} exists.",
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(TrackerError):
    """Blocking dependents or state prevent the mutation."""

    default_code = ErrorCode.CONFLICT
    error_type = ErrorType.CONFLICT


class SequenceError(TrackerError):
    """The counter mutation did not return a usable value."""

    default_code = ErrorCode.SEQUENCE_ERROR


class ValidationError(TrackerError):
    """Malformed input."""

    default_code = ErrorCode.VALIDATION_ERROR
    error_type = ErrorType.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        details: Optional[Mapping[str, Any]] = None,
        remediation: Optional[str] = None,
    ):
        merged = dict(details or {})
        if field:
            merged.setdefault("field", field)
        super().__init__(message, code=code, details=merged, remediation=remediation)
        self.field = field


class OperationFailedError(TrackerError):
    """Generic store-level failure such as lost connectivity."""

    default_code = ErrorCode.OPERATION_FAILED
    error_type = ErrorType.UNAVAILABLE


class PartialDeletionError(OperationFailedError):
    """A multi-node cascade stopped after removing some nodes.

    Already-removed nodes are not restored.
    """

    default_code = ErrorCode.PARTIAL_FAILURE

    def __init__(
        self,
        message: str,
        *,
        deleted: List[str],
        failed: List[Dict[str, str]],
        pending: List[str],
    ):
        super().__init__(
            message,
            details={"deleted": deleted, "failed": failed, "pending": pending},
            remediation="Inspect the failed nodes and retry the deletion.",
        )
        self.deleted = deleted
        self.failed = failed
        self.pending = pending


class BatchAbortedError(TrackerError):
    """A batch stopped on its first failure and the caller asked for a raise.

    ``report`` holds the results produced before the stop.
    """

    default_code = ErrorCode.BATCH_ABORTED

    def __init__(self, message: str, *, report: "BatchReport"):
        super().__init__(message, details={"report": report.to_dict()})
        self.report = report


def error_from_exception(
    exc: TrackerError, *, request_id: Optional[str] = None
) -> ToolResponse:
    """Build an error envelope from a tracker exception."""
    return error_response(
        exc.message,
        error_code=exc.code,
        error_type=exc.error_type,
        details=exc.details or None,
        remediation=exc.remediation,
        request_id=request_id,
    )
