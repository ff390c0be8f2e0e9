"""Helpers shared by the unified tool routers.

Handlers validate their payload with these helpers, then hand the core call
to :func:`run_operation`, which times it, emits metrics and converts the
outcome (or a raised :class:`TrackerError`) into a response-v2 envelope.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from tracker_mcp.core.batch_operations import BatchReport
from tracker_mcp.core.context import generate_correlation_id, get_correlation_id
from tracker_mcp.core.errors import TrackerError, error_from_exception
from tracker_mcp.core.observability import get_metrics
from tracker_mcp.core.responses import (
    ErrorCode,
    ErrorType,
    error_response,
    internal_error,
    sanitize_error_message,
    success_response,
)

logger = logging.getLogger(__name__)
_metrics = get_metrics()


def request_id(prefix: str) -> str:
    return get_correlation_id() or generate_correlation_id(prefix=prefix)


def validation_error(
    *,
    tool: str,
    field: str,
    action: str,
    message: str,
    request_id: str,
    code: ErrorCode = ErrorCode.MISSING_REQUIRED,
    remediation: Optional[str] = None,
) -> dict:
    effective_remediation = remediation or f"Provide a valid '{field}' value"
    return asdict(
        error_response(
            f"Invalid field '{field}' for {tool}.{action}: {message}",
            error_code=code,
            error_type=ErrorType.VALIDATION,
            remediation=effective_remediation,
            details={"field": field, "action": f"{tool}.{action}"},
            request_id=request_id,
        )
    )


def is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def read_flags(
    payload: Dict[str, Any],
    names: Tuple[str, ...],
    *,
    tool: str,
    action: str,
    request_id: str,
    defaults: Optional[Dict[str, bool]] = None,
) -> Tuple[Dict[str, bool], Optional[dict]]:
    """Read boolean flags; a missing or None value takes its default (False).

    Returns:
        (flags, error) where error is a validation envelope or None
    """
    flags: Dict[str, bool] = {}
    for name in names:
        value = payload.get(name)
        if value is not None and not isinstance(value, bool):
            return flags, validation_error(
                tool=tool,
                field=name,
                action=action,
                message=f"{name} must be a boolean",
                request_id=request_id,
                code=ErrorCode.INVALID_FORMAT,
            )
        flags[name] = (defaults or {}).get(name, False) if value is None else value
    return flags, None


def read_batch_size(
    payload: Dict[str, Any], *, tool: str, action: str, request_id: str
) -> Tuple[Optional[int], Optional[dict]]:
    value = payload.get("batch_size")
    if value is None:
        return None, None
    if not isinstance(value, int) or isinstance(value, bool):
        return None, validation_error(
            tool=tool,
            field="batch_size",
            action=action,
            message="batch_size must be an integer",
            request_id=request_id,
            code=ErrorCode.INVALID_FORMAT,
        )
    return value, None


def _metric(tool: str, action: str) -> str:
    return f"{tool}.{action.replace('-', '_')}"


def batch_envelope(report: BatchReport, *, request_id: str, telemetry: Dict[str, Any]) -> dict:
    """Wrap a batch report.

    A report whose ``success`` is False (the run halted on a failure)
    becomes an error envelope that still carries the full report.
    """
    data = report.to_dict()
    warnings: List[str] = list(report.warnings)
    if report.success:
        if report.failed:
            warnings.append(
                f"{report.failed} of {report.total_requested} item(s) failed"
            )
        if report.cancelled:
            warnings.append(f"Cancelled with {report.skipped} item(s) not attempted")
        return asdict(
            success_response(
                data=data,
                warnings=warnings or None,
                request_id=request_id,
                telemetry=telemetry,
            )
        )

    first = report.failures[0] if report.failures else None
    message = (
        f"Batch stopped at item {first.index}: {first.error}"
        if first is not None
        else "Batch did not complete"
    )
    return asdict(
        error_response(
            message,
            data=data,
            error_code=ErrorCode.PARTIAL_FAILURE,
            error_type=ErrorType.CONFLICT,
            remediation="Fix the failed item and resubmit the skipped items, "
            "or pass continue_on_error=true.",
            request_id=request_id,
            telemetry=telemetry,
        )
    )


def run_operation(
    *,
    tool: str,
    action: str,
    request_id: str,
    operation: Callable[[], Any],
    dry_run: bool = False,
) -> dict:
    """Execute a core call and build its envelope.

    Results exposing ``to_dict`` are serialized through it; lists are
    returned under ``items`` with a ``count``.
    """
    metric = _metric(tool, action)
    start = time.perf_counter()
    try:
        result = operation()
    except TrackerError as exc:
        elapsed_ms = (time.perf_counter() - start) * 1000
        _metrics.counter(metric, labels={"status": "error", "code": exc.code.value})
        logger.info(f"{tool}.{action} failed: {exc.code.value}: {exc.message}")
        response = error_from_exception(exc, request_id=request_id)
        response.meta["telemetry"] = {"duration_ms": round(elapsed_ms, 2)}
        return asdict(response)
    except Exception as exc:
        logger.exception(f"Unexpected error in {tool}.{action}")
        _metrics.counter(metric, labels={"status": "error", "code": ErrorCode.INTERNAL_ERROR.value})
        response = internal_error(
            sanitize_error_message(exc, context=f"{tool}.{action}"),
            request_id=request_id,
        )
        return asdict(response)

    elapsed_ms = (time.perf_counter() - start) * 1000
    telemetry = {"duration_ms": round(elapsed_ms, 2)}
    _metrics.timer(metric + ".duration_ms", elapsed_ms)
    _metrics.counter(
        metric,
        labels={"status": "success", "dry_run": "true" if dry_run else "false"},
    )

    if isinstance(result, BatchReport):
        _metrics.histogram(metric + ".items", result.total_requested)
        return batch_envelope(result, request_id=request_id, telemetry=telemetry)
    if hasattr(result, "to_dict"):
        data = result.to_dict()
    elif isinstance(result, list):
        data = {"items": result, "count": len(result)}
    else:
        data = dict(result or {})
    if dry_run:
        data.setdefault("dry_run", True)
    warnings = data.get("warnings") or None
    return asdict(
        success_response(
            data=data,
            warnings=warnings,
            request_id=request_id,
            telemetry=telemetry,
        )
    )
