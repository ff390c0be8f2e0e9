"""
Standard response contracts for tracker-mcp tool operations.

All MCP tool responses follow one envelope:

    {
        "success": bool,       # operation success/failure
        "data": {...},         # primary payload (error details on failure)
        "error": str | null,   # error message or null on success
        "meta": {
            "version": "response-v2",
            "request_id": "req_abc123"?,
            "warnings": ["..."]?,
            "telemetry": { ... }?
        }
    }

Key Principle:
    - `success=True` means the operation executed correctly. A deletion
      impact preview that lists blockers is still a success.
    - `success=False` means the operation failed to execute; `data` carries
      `error_code`, `error_type` and, where useful, `remediation`.
    - A batch that runs to completion is a success even when individual
      items failed; the per-item outcome lives in `data.results`. A batch
      halted by a failure is an error that still carries the report.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Union

import httpx

from tracker_mcp.core.context import get_correlation_id

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Machine-readable error codes for tool responses."""

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_REQUIRED = "MISSING_REQUIRED"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_FIELD = "INVALID_FIELD"
    INVALID_PARENT = "INVALID_PARENT"

    # Resource errors
    NOT_FOUND = "NOT_FOUND"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    ISSUE_NOT_FOUND = "ISSUE_NOT_FOUND"
    COMPONENT_NOT_FOUND = "COMPONENT_NOT_FOUND"
    MILESTONE_NOT_FOUND = "MILESTONE_NOT_FOUND"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    CONFLICT = "CONFLICT"
    DELETION_BLOCKED = "DELETION_BLOCKED"
    ALREADY_ARCHIVED = "ALREADY_ARCHIVED"

    # System errors
    SEQUENCE_ERROR = "SEQUENCE_ERROR"
    OPERATION_FAILED = "OPERATION_FAILED"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    BATCH_ABORTED = "BATCH_ABORTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNAVAILABLE = "UNAVAILABLE"


class ErrorType(str, Enum):
    """Error categories for routing and client-side handling."""

    VALIDATION = "validation"  # 400 - No retry, fix input
    NOT_FOUND = "not_found"  # 404 - No retry
    CONFLICT = "conflict"  # 409 - Maybe retry, check state
    INTERNAL = "internal"  # 500 - Yes, with backoff
    UNAVAILABLE = "unavailable"  # 503 - Yes, with backoff


@dataclass
class ToolResponse:
    """
    Standard response structure for MCP tool operations.

    Attributes:
        success: Whether the operation completed successfully
        data: The primary payload (operation-specific structured data)
        error: Error message if success is False, None otherwise
        meta: Response metadata including version identifier
    """

    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=lambda: {"version": "response-v2"})


def _build_meta(
    *,
    request_id: Optional[str] = None,
    warnings: Optional[Sequence[str]] = None,
    telemetry: Optional[Mapping[str, Any]] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Construct a metadata payload that always includes the response version.

    The correlation ID from the active request context is used when no
    explicit ``request_id`` is given.
    """
    meta: Dict[str, Any] = {"version": "response-v2"}

    effective_request_id = request_id or get_correlation_id() or None
    if effective_request_id:
        meta["request_id"] = effective_request_id
    if warnings:
        meta["warnings"] = list(warnings)
    if telemetry:
        meta["telemetry"] = dict(telemetry)
    if extra:
        meta.update(dict(extra))

    return meta


def success_response(
    data: Optional[Mapping[str, Any]] = None,
    *,
    warnings: Optional[Sequence[str]] = None,
    telemetry: Optional[Mapping[str, Any]] = None,
    request_id: Optional[str] = None,
    meta: Optional[Mapping[str, Any]] = None,
    **fields: Any,
) -> ToolResponse:
    """Create a standardized success response.

    Args:
        data: Optional mapping used as the base payload.
        warnings: Non-fatal issues to surface in ``meta.warnings``.
        telemetry: Timing/performance metadata.
        request_id: Correlation identifier propagated through logs.
        meta: Arbitrary extra metadata to merge into ``meta``.
        **fields: Additional payload fields (shorthand for ``data.update``).
    """
    payload: Dict[str, Any] = {}
    if data:
        payload.update(dict(data))
    if fields:
        payload.update(fields)

    meta_payload = _build_meta(
        request_id=request_id,
        warnings=warnings,
        telemetry=telemetry,
        extra=meta,
    )
    return ToolResponse(success=True, data=payload, error=None, meta=meta_payload)


def error_response(
    message: str,
    *,
    data: Optional[Mapping[str, Any]] = None,
    error_code: Optional[Union[ErrorCode, str]] = None,
    error_type: Optional[Union[ErrorType, str]] = None,
    remediation: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
    request_id: Optional[str] = None,
    telemetry: Optional[Mapping[str, Any]] = None,
) -> ToolResponse:
    """Create a standardized error response.

    Args:
        message: Human-readable description of the failure.
        data: Optional mapping with additional machine-readable context.
        error_code: Canonical error code (``ErrorCode`` member or string).
        error_type: Error category (``ErrorType`` member or string).
        remediation: User-facing guidance on how to fix the issue.
        details: Nested structure describing the failure.
        request_id: Correlation identifier propagated through logs.
        telemetry: Timing metadata captured before failure.

    Example:
        >>> error_response(
        ...     "Validation failed: title is required",
        ...     error_code=ErrorCode.MISSING_REQUIRED,
        ...     error_type=ErrorType.VALIDATION,
        ...     remediation="Provide a non-empty title",
        ... )
    """
    payload: Dict[str, Any] = {}
    if data:
        payload.update(dict(data))

    code = error_code if error_code is not None else ErrorCode.INTERNAL_ERROR
    kind = error_type if error_type is not None else ErrorType.INTERNAL

    payload.setdefault("error_code", code.value if isinstance(code, Enum) else code)
    payload.setdefault("error_type", kind.value if isinstance(kind, Enum) else kind)
    if remediation is not None:
        payload.setdefault("remediation", remediation)
    if details:
        payload.setdefault("details", dict(details))

    meta_payload = _build_meta(request_id=request_id, telemetry=telemetry)
    return ToolResponse(success=False, data=payload, error=message, meta=meta_payload)


def internal_error(
    message: str = "An internal error occurred",
    *,
    request_id: Optional[str] = None,
) -> ToolResponse:
    """Create an internal error response (HTTP 500 analog)."""
    remediation = "Please try again. If the problem persists, check the server logs."
    if request_id:
        remediation += f" Reference: {request_id}"

    return error_response(
        message,
        error_code=ErrorCode.INTERNAL_ERROR,
        error_type=ErrorType.INTERNAL,
        remediation=remediation,
        request_id=request_id,
    )


# ---------------------------------------------------------------------------
# Error Message Sanitization
# ---------------------------------------------------------------------------


def sanitize_error_message(
    exc: Exception,
    context: str = "",
    include_type: bool = False,
) -> str:
    """
    Convert an exception to a user-safe message without internal details.

    The full exception is logged server-side at debug level.

    Args:
        exc: The exception to sanitize
        context: Optional context for logging (e.g., "bulk create item 3")
        include_type: Whether to include the exception type name

    Returns:
        User-safe error message without stack traces or internal state
    """
    if context:
        logger.debug(f"Error in {context}: {exc}", exc_info=True)
    else:
        logger.debug(f"Error: {exc}", exc_info=True)

    type_name = type(exc).__name__

    if isinstance(exc, httpx.TimeoutException):
        return "Document store request timed out"
    if isinstance(exc, httpx.HTTPError):
        return "Document store request failed"
    if isinstance(exc, json.JSONDecodeError):
        return "Invalid JSON format"
    if isinstance(exc, (ValueError, TypeError)):
        suffix = f" ({type_name})" if include_type else ""
        return f"Invalid value provided{suffix}"
    if isinstance(exc, KeyError):
        return "Required field not found"
    if isinstance(exc, ConnectionError):
        return "Connection failed - service may be unavailable"

    suffix = f" ({type_name})" if include_type else ""
    return f"An internal error occurred{suffix}"
